#!/usr/bin/env python3
import importlib
import logging
# disable annoying warning log about blowfish deprecation
import warnings
from cryptography.utils import CryptographyDeprecationWarning

warnings.filterwarnings("ignore", category=CryptographyDeprecationWarning)
from typing import Type

import click

from k3p import log
from k3p.commands.install import install

logger = logging.getLogger("k3p.cli")


def SubCLI(module: str) -> Type[click.Group]:
    mod = importlib.import_module(module)

    class Cli(click.Group):
        def list_commands(self, ctx):
            rv = []
            for attr in dir(mod):
                if attr.startswith("_"):
                    continue
                if isinstance(getattr(mod, attr), click.Command):
                    rv.append(attr.replace("_", "-"))
            return rv

        def get_command(self, ctx, name):
            name = name.replace("-", "_")
            try:
                return getattr(mod, name)
            except AttributeError:
                return

    return Cli


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enables verbose mode.")
@click.version_option("0.1.0")
def cli(verbose):
    """Package, ship and bootstrap air-gapped k3s clusters."""
    log.configure(verbose)


@cli.command(cls=SubCLI("k3p.commands.package"))
def package():
    """ Build and inspect packages. """
    pass


@cli.command(cls=SubCLI("k3p.commands.node"))
def node():
    """ Manage the nodes of an installed cluster. """
    pass


@cli.command(cls=SubCLI("k3p.commands.token"))
def token():
    """ Retrieve or generate join tokens. """
    pass


cli.add_command(install)


if __name__ == '__main__':
    cli()
