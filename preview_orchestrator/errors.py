"""Exception hierarchy for the preview orchestrator.

Every failure that can unwind out of ``ProcessSupervisor.start`` or
``ProxyManager.start_proxy`` is a subclass of :class:`PreviewError`.  Each
carries a short operational message suitable for end users via
:meth:`PreviewError.user_message`; :class:`BuildError` is the exception to that
rule and exposes the (truncated) build-tool output verbatim so an upstream
collaborator can decide whether to regenerate the sources.

Crashes of already-running servers are never raised -- they are recorded as
``ProcessExit`` entries by the supervisor's monitor and logged.
"""

from __future__ import annotations

from pathlib import Path


class PreviewError(Exception):
    """Base class for every orchestrator failure."""

    generic_message = "Preview operation failed."

    def user_message(self, limit: int = 4000) -> str:
        """Return the message that should be shown to an end user."""
        return self.generic_message


class AllocationError(PreviewError):
    """The operating system refused to hand out an ephemeral port."""

    generic_message = "No free network port is available for the preview."


class MaterializationError(PreviewError):
    """The project directory could not be created or populated."""

    generic_message = "The preview project could not be written to disk."

    def __init__(self, message: str, path: str | Path | None = None, existed: bool = False):
        self.path = Path(path) if path is not None else None
        self.existed = existed
        super().__init__(message)


class BuildError(PreviewError):
    """An install or build step exited non-zero or timed out.

    Attributes:
        step: ``"install"`` or ``"build"``.
        output: Combined stdout+stderr of the failing step only.
        returncode: Exit status (``-1`` when the step was killed on timeout).
        timed_out: Whether the step exceeded its time bound.
        healed: Whether this failure happened on the rebuild after healing.
        command: The command line that failed, for diagnostics.
    """

    generic_message = "The generated project failed to build."

    def __init__(
        self,
        message: str,
        *,
        step: str = "build",
        output: str = "",
        returncode: int = -1,
        timed_out: bool = False,
        healed: bool = False,
        command: str = "",
    ):
        self.step = step
        self.output = output
        self.returncode = returncode
        self.timed_out = timed_out
        self.healed = healed
        self.command = command
        super().__init__(message)

    @property
    def stderr_text(self) -> str:
        return self.output

    def truncated_output(self, limit: int = 4000) -> str:
        """Return the captured output, keeping the tail if it exceeds *limit*.

        Build tools print the actual error last, so the head is dropped.
        """
        if limit <= 0 or len(self.output) <= limit:
            return self.output
        dropped = len(self.output) - limit
        return f"... [{dropped} characters truncated]\n" + self.output[-limit:]

    def user_message(self, limit: int = 4000) -> str:
        if self.timed_out:
            return f"The {self.step} step timed out."
        text = self.truncated_output(limit)
        return text or self.generic_message


class NotHealable(PreviewError):
    """The build error text contains nothing the healer can fix."""

    generic_message = "The build failure cannot be repaired automatically."


class SpawnError(PreviewError):
    """A server or proxy process could not be created or did not come up."""

    generic_message = "The preview server could not be started."


class ValidationError(PreviewError, ValueError):
    """Caller input was rejected before any process was spawned."""

    generic_message = "The preview request was invalid."
