"""
Shell Integration - Makes the wrapped shell emit the prompt marker

bash gets a generated --rcfile, zsh a generated ZDOTDIR. Both source the
user's own startup files first and then wrap PS1 in the start and end
markers and PS2 in the continuation marker, re-wrapping them before every
prompt in case a prompt theme rebuilt them. The execution marker goes out
through PS0 (bash 4.4 and later) or a preexec function (zsh). Shells
without a hook still run normally; their commands simply cannot be
delimited.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .detector import BoundaryMarker


logger = logging.getLogger(__name__)

SUPPORTED_SHELLS = ("bash", "zsh")

BASH_RC = r"""# recli shell integration (generated)
if [ -n "$RECLI_USER_BASHRC" ] && [ -f "$RECLI_USER_BASHRC" ]; then
    . "$RECLI_USER_BASHRC"
fi
__recli_preexec=
if [ "${BASH_VERSINFO[0]}" -gt 4 ] || { [ "${BASH_VERSINFO[0]}" -eq 4 ] && [ "${BASH_VERSINFO[1]}" -ge 4 ]; }; then
    # PS0 is printed once a command line is complete, right before it runs
    __recli_preexec=';preexec'
    PS0='\e]'"${RECLI_MARKER_CODE}"';'"${RECLI_MARKER_TOKEN}"';C\a'"${PS0}"
fi
__recli_start='\[\e]'"${RECLI_MARKER_CODE}"';'"${RECLI_MARKER_TOKEN}"';S;${__recli_status}'"${__recli_preexec}"'\a\]'
__recli_mark='\[\e]'"${RECLI_MARKER_CODE}"';'"${RECLI_MARKER_TOKEN}"';P;${__recli_status};${PWD}\a\]'
__recli_cont='\[\e]'"${RECLI_MARKER_CODE}"';'"${RECLI_MARKER_TOKEN}"';K\a\]'
__recli_precmd() {
    case "$PS1" in
        *"$__recli_mark"*) ;;
        *) PS1="${__recli_start}${PS1}${__recli_mark}" ;;
    esac
    case "$PS2" in
        *"$__recli_cont"*) ;;
        *) PS2="${PS2}${__recli_cont}" ;;
    esac
}
__recli_user_pc="${PROMPT_COMMAND%;}"
PROMPT_COMMAND='__recli_status=$?;'"${__recli_user_pc:+${__recli_user_pc};}"'__recli_precmd'
unset __recli_user_pc
"""

ZSH_ENV = r"""# recli shell integration (generated)
__recli_zdotdir="$ZDOTDIR"
ZDOTDIR="${RECLI_USER_ZDOTDIR:-$HOME}"
[[ -f "$ZDOTDIR/.zshenv" ]] && source "$ZDOTDIR/.zshenv"
ZDOTDIR="$__recli_zdotdir"
unset __recli_zdotdir
"""

ZSH_RC = r"""# recli shell integration (generated)
ZDOTDIR="${RECLI_USER_ZDOTDIR:-$HOME}"
[[ -f "$ZDOTDIR/.zshrc" ]] && source "$ZDOTDIR/.zshrc"
setopt prompt_subst
__recli_start=$'%{\e]'"${RECLI_MARKER_CODE};${RECLI_MARKER_TOKEN}"$';S;${__recli_status};preexec\a%}'
__recli_mark=$'%{\e]'"${RECLI_MARKER_CODE};${RECLI_MARKER_TOKEN}"$';P;${__recli_status};${PWD}\a%}'
__recli_cont=$'%{\e]'"${RECLI_MARKER_CODE};${RECLI_MARKER_TOKEN}"$';K\a%}'
__recli_precmd() {
    __recli_status=$?
    [[ "$PS1" == *"$__recli_mark"* ]] || PS1="${__recli_start}${PS1}${__recli_mark}"
    [[ "$PS2" == *"$__recli_cont"* ]] || PS2="${PS2}${__recli_cont}"
}
__recli_preexec() {
    print -rn -- $'\e]'"${RECLI_MARKER_CODE};${RECLI_MARKER_TOKEN}"$';C\a'
}
precmd_functions=(__recli_precmd $precmd_functions)
preexec_functions=(__recli_preexec $preexec_functions)
"""


@dataclass
class ShellLaunch:
    """Everything the PTY driver needs to start the shell."""
    shell_path: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    integrated: bool = False

    @property
    def shell_name(self) -> str:
        return Path(self.shell_path).name


def shell_kind(shell_path: str) -> Optional[str]:
    name = Path(shell_path).name.lstrip("-")
    for kind in SUPPORTED_SHELLS:
        if name == kind or name.startswith(kind + "-"):
            return kind
    return None


def prepare_shell(
    shell_path: str,
    session_dir,
    marker: BoundaryMarker,
    base_env: Optional[Dict[str, str]] = None,
    session_id: Optional[str] = None,
) -> ShellLaunch:
    """
    Write the integration files for `shell_path` into the session directory
    and return the argv/env to launch it with.
    """
    env = dict(os.environ if base_env is None else base_env)
    env["RECLI_MARKER_CODE"] = str(marker.code)
    env["RECLI_MARKER_TOKEN"] = marker.token
    if session_id:
        env["RECLI_SESSION_ID"] = session_id

    hooks_dir = Path(session_dir) / "shell"
    kind = shell_kind(shell_path)

    if kind == "bash":
        hooks_dir.mkdir(parents=True, exist_ok=True)
        rcfile = hooks_dir / "bashrc"
        rcfile.write_text(BASH_RC)
        env.setdefault("RECLI_USER_BASHRC", str(Path(env.get("HOME", "~")).expanduser() / ".bashrc"))
        return ShellLaunch(shell_path, ["--rcfile", str(rcfile), "-i"], env, integrated=True)

    if kind == "zsh":
        hooks_dir.mkdir(parents=True, exist_ok=True)
        (hooks_dir / ".zshenv").write_text(ZSH_ENV)
        (hooks_dir / ".zshrc").write_text(ZSH_RC)
        user_zdotdir = env.get("ZDOTDIR")
        if user_zdotdir:
            env["RECLI_USER_ZDOTDIR"] = user_zdotdir
        env["ZDOTDIR"] = str(hooks_dir)
        return ShellLaunch(shell_path, ["-i"], env, integrated=True)

    logger.warning(
        "No prompt hook for %s; commands in this session cannot be delimited", shell_path
    )
    return ShellLaunch(shell_path, [], env, integrated=False)
