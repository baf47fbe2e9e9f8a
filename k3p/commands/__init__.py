import functools
import logging

import click

from k3p.errors import K3pError

logger = logging.getLogger("k3p.commands")


def handle_errors(fn):
    """Surface library and I/O failures as a click error with a non-zero exit."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (K3pError, OSError) as e:
            logger.debug("command failed", exc_info=True)
            raise click.ClickException(str(e)) from e

    return wrapper


def parse_variables(values) -> dict:
    rv = {}
    for v in values or ():
        key, sep, value = v.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {v!r}", param_hint="--set")
        rv[key] = value
    return rv
