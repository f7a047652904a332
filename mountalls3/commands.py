"""Bounded invocation of external commands (aws, s3fs, umount, keyctl)."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import CommandNotFound, CommandTimeout

logger = logging.getLogger(__name__)

# Per-kind time budgets in seconds.
LIST_TIMEOUT = 30.0
ISSUE_TIMEOUT = 60.0
MOUNT_TIMEOUT = 60.0
UNMOUNT_TIMEOUT = 30.0
REGION_TIMEOUT = 30.0
KEYRING_TIMEOUT = 10.0


@dataclass(frozen=True)
class CommandResult:
    argv: tuple
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_command(argv: Sequence[str]) -> str:
    """Render *argv* as a copy-pasteable shell line."""
    return " ".join(shlex.quote(str(a)) for a in argv)


class CommandRunner:
    """Runs external commands with a hard timeout.

    A missing executable raises ``CommandNotFound`` (fatal to the run); an
    exceeded budget raises ``CommandTimeout`` after the child is killed.
    Non-zero exits are returned, not raised, so callers decide how to
    classify them.
    """

    def run(
        self,
        argv: Sequence[str],
        timeout: float,
        input: Optional[str] = None,
        pass_fds: Sequence[int] = (),
    ) -> CommandResult:
        logger.debug("Running: %s", format_command(argv))
        try:
            proc = subprocess.run(
                list(argv),
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                pass_fds=tuple(pass_fds),
            )
        except FileNotFoundError:
            raise CommandNotFound(argv[0]) from None
        except subprocess.TimeoutExpired:
            raise CommandTimeout(argv, timeout) from None
        return CommandResult(
            argv=tuple(argv),
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
