"""Classification of errors that escape a pipeline phase."""

from collections.abc import Iterable

from changeflow.enums import ErrorClass
from changeflow.exceptions import ConfigurationError, FatalWorkflowError

DEFAULT_FATAL_PATTERNS = ("does not exist",)


def classify_error(error: BaseException, fatal_patterns: Iterable[str] = DEFAULT_FATAL_PATTERNS) -> ErrorClass:
    """Decide whether retrying ``error`` could ever help.

    Fatal errors are configuration and validation problems: instances of
    ``FatalWorkflowError`` or ``ConfigurationError``, or any error whose
    message contains one of ``fatal_patterns`` (case-insensitive). Every
    other error is transient.

    Example:
        >>> classify_error(RuntimeError("Base branch 'x' does not exist"))
        <ErrorClass.FATAL: 'fatal'>
        >>> classify_error(TimeoutError("read timed out"))
        <ErrorClass.TRANSIENT: 'transient'>
    """
    if isinstance(error, FatalWorkflowError | ConfigurationError):
        return ErrorClass.FATAL

    message = str(error).lower()
    if any(pattern.lower() in message for pattern in fatal_patterns if pattern):
        return ErrorClass.FATAL
    return ErrorClass.TRANSIENT


def is_fatal(error: BaseException, fatal_patterns: Iterable[str] = DEFAULT_FATAL_PATTERNS) -> bool:
    return classify_error(error, fatal_patterns) is ErrorClass.FATAL
