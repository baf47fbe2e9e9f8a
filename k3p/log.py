import logging
import sys
import time
import typing

from k3p import ROOT_LOGGER_NAME

REDACTED = "<redacted>"

exec_logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.exec")


def configure(verbose: bool = False) -> logging.Logger:
    """Attach the stderr handler to the k3p root logger. Safe to call more than once."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)

    formatter = logging.Formatter('%(asctime)s %(levelname)s: %(message)s', datefmt='%Y-%m-%dT%H:%M:%SZ')
    formatter.converter = time.gmtime
    handler.setFormatter(formatter)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers = []
    logger.addHandler(handler)

    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    return logger


def redact_secrets(line: str, secrets: typing.Iterable[str]) -> str:
    for secret in secrets or []:
        if secret:
            line = line.replace(secret, REDACTED)
    return line


def log_line(prefix: str, raw: typing.Union[str, bytes], secrets: typing.Iterable[str] = ()):
    line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    line = line.rstrip()
    if line:
        exec_logger.info(f"[{prefix}] {redact_secrets(line, secrets)}")


def tail_reader(prefix: str, stream: typing.IO, secrets: typing.Iterable[str] = ()) -> None:
    """
    Consume the stream line by line until EOF, logging every non-empty line under the given prefix.
    Accepts both text and binary streams.
    """
    secrets = list(secrets or [])
    while True:
        raw = stream.readline()
        if not raw:
            break
        log_line(prefix, raw, secrets)
