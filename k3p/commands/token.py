import click

from k3p import DEFAULT_TOKEN_LENGTH
from k3p.cluster import read_token
from k3p.commands import handle_errors
from k3p.install import generate_token
from k3p.models import NodeRole
from k3p.node import LocalNode


@click.command()
@click.argument('role', type=click.Choice([r.value for r in NodeRole]))
@handle_errors
def get(role):
    """ Print the token for joining servers or agents to the cluster on this host. """
    with LocalNode() as n:
        click.echo(read_token(n, NodeRole(role)))


@click.command()
@click.option('--length', '-l', type=click.IntRange(min=16), default=DEFAULT_TOKEN_LENGTH, show_default=True)
def generate(length):
    """ Generate a random token suitable for --token. """
    click.echo(generate_token(length))
