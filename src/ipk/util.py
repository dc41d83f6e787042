import argparse
import logging
import os
import sys
import time
from typing import (
    NoReturn,
    Optional,
    TypeVar,
    Tuple,
    Any,
    Mapping,
)

import colorlog

T = TypeVar("T")


_DEFAULT_LOGGER: Optional[logging.Logger] = None
_STDOUT_HANDLER: Optional[logging.StreamHandler] = None
_STDERR_HANDLER: Optional[logging.StreamHandler] = None
_LOGGING_SET_UP = False


def assume_not_none(x: Optional[T]) -> T:
    if x is None:  # pragma: no cover
        raise ValueError(
            'Internal error: None was given, but the receiver assumed "not None" here'
        )
    return x


def _debug(msg: str) -> None:
    logger = _DEFAULT_LOGGER
    if logger:
        logger.debug(msg)


def _info(msg: str) -> None:
    logger = _DEFAULT_LOGGER
    if logger:
        logger.info(msg)
    # No fallback print for info


def _error(msg: str, *, prog: Optional[str] = None) -> "NoReturn":
    logger = _DEFAULT_LOGGER
    if logger:
        logger.error(msg)
    else:
        me = os.path.basename(sys.argv[0]) if prog is None else prog
        print(
            f"{me}: error: {msg}",
            file=sys.stderr,
        )
    sys.exit(1)


def _warn(msg: str, *, prog: Optional[str] = None) -> None:
    logger = _DEFAULT_LOGGER
    if logger:
        logger.warning(msg)
    else:
        me = os.path.basename(sys.argv[0]) if prog is None else prog

        print(
            f"{me}: warning: {msg}",
            file=sys.stderr,
        )


class ColorizedArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        _error(message, prog=self.prog)


def resolve_source_date_epoch(
    command_line_value: Optional[int],
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    if environ is None:
        environ = os.environ
    mtime = command_line_value
    if mtime is None and "SOURCE_DATE_EPOCH" in environ:
        sde_raw = environ["SOURCE_DATE_EPOCH"]
        if sde_raw == "":
            _error("SOURCE_DATE_EPOCH is set but empty.")
        try:
            mtime = int(sde_raw)
        except ValueError:
            _error(f'SOURCE_DATE_EPOCH must be an integer, got "{sde_raw}".')
    if mtime is None:
        mtime = int(time.time())
    return mtime


def compute_output_filename(fields: Mapping[str, str]) -> str:
    package_name = fields["Package"]
    package_version = fields["Version"]
    package_architecture = fields["Architecture"]
    if ":" in package_version:
        package_version = package_version.split(":", 1)[1]

    return f"{package_name}_{package_version}_{package_architecture}.ipk"


def _check_color() -> Tuple[bool, bool, Optional[str]]:
    requested_color = os.environ.get(
        "IPK_COLORS", "never" if "NO_COLOR" in os.environ else "auto"
    )
    bad_request = None
    if requested_color not in {"auto", "always", "never"}:
        bad_request = requested_color
        requested_color = "auto"

    if requested_color == "auto":
        stdout_color = sys.stdout.isatty()
        stderr_color = sys.stderr.isatty()
    else:
        enable = requested_color == "always"
        stdout_color = enable
        stderr_color = enable
    return stdout_color, stderr_color, bad_request


def program_name() -> str:
    name = os.path.basename(sys.argv[0])
    if name.endswith(".py"):
        name = name[:-3]
    if name == "__main__":
        name = os.path.basename(os.path.dirname(sys.argv[0]))
    if name in ("ipk_packer", ""):
        name = "ipk-packer"
    return name


def setup_logging(
    *,
    log_only_to_stderr: bool = False,
    reconfigure_logging: bool = False,
    verbose: bool = False,
) -> str:
    global _LOGGING_SET_UP, _DEFAULT_LOGGER, _STDOUT_HANDLER, _STDERR_HANDLER
    if _LOGGING_SET_UP and not reconfigure_logging:
        raise RuntimeError(
            "Logging has already been configured."
            " Use reconfigure_logging=True if you need to reconfigure it"
        )
    stdout_color, stderr_color, bad_request = _check_color()

    if log_only_to_stderr:
        stdout = sys.stderr
        stdout_color = stderr_color
    else:
        stdout = sys.stdout

    class LogLevelFilter(logging.Filter):
        def __init__(self, threshold: int, above: bool):
            super().__init__()
            self.threshold = threshold
            self.above = above

        def filter(self, record: logging.LogRecord) -> bool:
            if self.above:
                return record.levelno >= self.threshold
            else:
                return record.levelno < self.threshold

    color_format = (
        "{bold}{name}{reset}: {bold}{log_color}{levelnamelower}{reset}: {message}"
    )
    colorless_format = "{name}: {levelnamelower}: {message}"

    logger = logging.getLogger()
    if _STDOUT_HANDLER is not None:
        logger.removeHandler(_STDOUT_HANDLER)
    if _STDERR_HANDLER is not None:
        logger.removeHandler(_STDERR_HANDLER)

    if stdout_color:
        stdout_handler = colorlog.StreamHandler(stdout)
        stdout_handler.setFormatter(
            colorlog.ColoredFormatter(color_format, style="{", force_color=True)
        )
    else:
        stdout_handler = logging.StreamHandler(stdout)
        stdout_handler.setFormatter(logging.Formatter(colorless_format, style="{"))

    if stderr_color:
        stderr_handler = colorlog.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            colorlog.ColoredFormatter(color_format, style="{", force_color=True)
        )
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(colorless_format, style="{"))

    stdout_handler.addFilter(LogLevelFilter(logging.WARN, False))
    stderr_handler.addFilter(LogLevelFilter(logging.WARN, True))
    _STDOUT_HANDLER = stdout_handler
    _STDERR_HANDLER = stderr_handler
    logger.addHandler(stdout_handler)
    logger.addHandler(stderr_handler)

    name = program_name()

    old_factory = logging.getLogRecordFactory()

    def record_factory(
        *args: Any, **kwargs: Any
    ) -> logging.LogRecord:  # pragma: no cover
        record = old_factory(*args, **kwargs)
        record.levelnamelower = record.levelname.lower()
        return record

    if not _LOGGING_SET_UP:
        logging.setLogRecordFactory(record_factory)

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    _DEFAULT_LOGGER = logging.getLogger(name)

    if bad_request:
        _DEFAULT_LOGGER.warning(
            f'Invalid color request for "{bad_request}" in IPK_COLORS.'
            ' Resetting to "auto".'
        )

    _LOGGING_SET_UP = True
    return name
