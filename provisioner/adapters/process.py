"""
Subprocess runner for gpg, ykman and age-plugin-yubikey.

Read-only calls get a hard timeout. Calls that write to a token may
block on a touch or PIN entry for as long as the operator needs; they
are never killed, only reminded about. Children ignore SIGINT, so a
Ctrl-C at the terminal is handled by the provisioner between actions.
"""

import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..constants import Timeouts
from ..errors import ToolError, ToolUnavailable
from ..logging_config import get_logger
from ..security.secret_scope import feed_secrets

logger = get_logger(__name__)


def _ignore_interrupt() -> None:
    """Runs in the child before exec. An ignored SIGINT stays ignored across exec,
    so Ctrl-C at the terminal never lands in the middle of a token write."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)


@dataclass
class ToolResult:
    """Captured outcome of one tool invocation."""
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


class ToolRunner:
    """Runs external tools with a fixed environment."""

    def __init__(
        self,
        env: Optional[Dict[str, str]] = None,
        read_timeout: float = Timeouts.TOOL_READ,
        touch_reminder: float = Timeouts.TOUCH_REMINDER,
        on_reminder: Optional[Callable[[str, float], None]] = None,
    ):
        self.env = dict(os.environ)
        if env:
            self.env.update(env)
        self.read_timeout = read_timeout
        self.touch_reminder = touch_reminder
        self.on_reminder = on_reminder

    def run(self, args: Sequence[str], timeout: Optional[float] = None,
            serial: Optional[str] = None) -> ToolResult:
        """Run a read-only command and capture its output."""
        args = list(args)
        logger.debug("Running %s", " ".join(args))
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout or self.read_timeout,
                env=self.env,
                stdin=subprocess.DEVNULL,
                preexec_fn=_ignore_interrupt,
            )
        except FileNotFoundError:
            raise ToolUnavailable(f"{args[0]} not found in PATH", serial)
        except subprocess.TimeoutExpired:
            raise ToolError(f"{args[0]} timed out after {timeout or self.read_timeout:.0f}s",
                            serial)
        except OSError as e:
            raise ToolError(f"{args[0]} could not be started: {e}", serial)

        result = ToolResult(args, proc.returncode, proc.stdout or "", proc.stderr or "")
        if result.stdout:
            logger.trace("%s output:\n%s", args[0], result.stdout)
        return result

    def run_with_input(
        self,
        args: Sequence[str],
        items: Sequence = (),
        pass_fds: Sequence[int] = (),
        new_session: bool = False,
        show_prompts: bool = False,
        wait_message: Optional[str] = None,
        serial: Optional[str] = None,
    ) -> ToolResult:
        """
        Run a command that may wait on the operator.

        `items` (SecretBuffers or command strings) are written to the
        child's stdin, one per line. With no items the child inherits the
        terminal so it can prompt for itself. `new_session` detaches the
        child from the controlling terminal so tools that prompt through
        /dev/tty read stdin instead. `show_prompts` leaves stderr on the
        terminal.
        """
        args = list(args)
        logger.debug("Running %s", " ".join(args))
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.PIPE if items else None,
                stdout=subprocess.PIPE,
                stderr=None if show_prompts else subprocess.PIPE,
                env=self.env,
                pass_fds=tuple(pass_fds),
                start_new_session=new_session,
                preexec_fn=_ignore_interrupt,
            )
        except FileNotFoundError:
            raise ToolUnavailable(f"{args[0]} not found in PATH", serial)
        except OSError as e:
            raise ToolError(f"{args[0]} could not be started: {e}", serial)

        if items:
            try:
                feed_secrets(proc.stdin, *items)
            except BrokenPipeError:
                # Child exited before reading everything; its output says why
                pass

        waited = 0.0
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.touch_reminder)
                break
            except subprocess.TimeoutExpired:
                waited += self.touch_reminder
                message = wait_message or f"Waiting for {args[0]}"
                logger.notice("%s (%.0fs)", message, waited)
                if self.on_reminder is not None:
                    self.on_reminder(message, waited)

        return ToolResult(
            args,
            proc.returncode,
            (stdout or b"").decode('utf-8', errors='replace'),
            (stderr or b"").decode('utf-8', errors='replace'),
        )
