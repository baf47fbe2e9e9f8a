import logging

import click

from k3p import DEFAULT_SSH_PORT
from k3p.cluster import ClusterManager
from k3p.commands import handle_errors
from k3p.models import AddNodeOptions
from k3p.models import NodeConnectOptions
from k3p.models import NodeRole
from k3p.node import LocalNode

logger = logging.getLogger("k3p.commands.node")


@click.command()
@click.argument('address')
@click.option('--ssh-user', '-u', default="root", show_default=True, help="User to connect as.")
@click.option('--ssh-password', '-p', envvar="K3P_SSH_PASSWORD", default=None,
              help="Password for the ssh user. Read from K3P_SSH_PASSWORD when unset.")
@click.option('--private-key', '-k', type=click.Path(exists=True, dir_okay=False), default=None,
              help="Private key file for the ssh user.")
@click.option('--ssh-port', '-P', type=int, default=DEFAULT_SSH_PORT, show_default=True)
@click.option('--node-role', '-r', type=click.Choice([r.value for r in NodeRole]), default=NodeRole.AGENT.value,
              show_default=True, help="Join as another server or as an agent.")
@handle_errors
def add(address, ssh_user, ssh_password, private_key, ssh_port, node_role):
    """ Join a new node at ADDRESS to the cluster running on this host. """
    if not ssh_password and not private_key:
        raise click.UsageError("one of --ssh-password or --private-key is required")
    opts = AddNodeOptions(
        node_connect=NodeConnectOptions(
            address=address,
            ssh_user=ssh_user,
            ssh_password=ssh_password,
            ssh_key_file=private_key,
            ssh_port=ssh_port,
        ),
        node_role=NodeRole(node_role),
    )
    with LocalNode() as leader:
        ClusterManager(leader).add_node(opts)
    click.echo(f"node {address} joined the cluster as {node_role}")
