"""Error types for the document pipeline."""

from __future__ import annotations


class DocPipelineError(Exception):
    """Base class for every error raised by the document pipeline."""


class DependencyNotMet(DocPipelineError):
    """A step cannot proceed until the document changes.

    Never surfaced to callers: the runner turns it into a wait for the
    next change notification on the same document.
    """


class ConfigurationError(DocPipelineError):
    """Invalid step configuration or pipeline wiring.

    Examples:
    - Unknown factory key.
    - ``init()`` called twice on the same step.
    - A config file whose root is not a mapping.
    """


class StepError(DocPipelineError):
    """A step attempt failed with an error other than ``DependencyNotMet``.

    The original exception is kept as ``__cause__``.
    """

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        super().__init__(f"Step {step!r} failed: {message}")


class StepTimeoutError(DocPipelineError, TimeoutError):
    """A single attempt ran longer than the step's ``timeout_ms``."""

    def __init__(self, step: str, timeout_ms: int) -> None:
        self.step = step
        self.timeout_ms = timeout_ms
        super().__init__(f"Step {step!r} attempt exceeded {timeout_ms}ms")


class SectionError(DocPipelineError):
    """A child of a section failed.

    ``path`` lists step names from the outermost section down to the step
    that failed; ``cause`` is the original exception, unchanged.  Nested
    sections extend ``path`` rather than wrapping twice.
    """

    def __init__(self, path: tuple[str, ...], cause: BaseException) -> None:
        self.path = tuple(path)
        self.cause = cause
        super().__init__(
            f"Step {' > '.join(self.path)} failed: "
            f"{type(cause).__name__}: {cause}"
        )

    @property
    def failed_at(self) -> str:
        return self.path[-1]
