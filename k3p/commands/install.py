import logging

import click

from k3p import DEFAULT_SSH_PORT
from k3p import K3S_API_PORT
from k3p import archive
from k3p import node
from k3p.commands import handle_errors
from k3p.commands import parse_variables
from k3p.install import Installer
from k3p.models import InstallOptions
from k3p.models import NodeConnectOptions
from k3p.models import NodeRole
from k3p.models import NodeType

logger = logging.getLogger("k3p.commands.install")


@click.command()
@click.argument('package_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--init-ha', is_flag=True, help="Initialize an HA control plane with embedded etcd.")
@click.option('--accept-eula', is_flag=True, help="Accept the package EULA without prompting.")
@click.option('--join', '-j', 'join_url', default="",
              help="URL of an existing server to join, e.g. https://10.0.0.1:6443.")
@click.option('--join-role', '-r', type=click.Choice([r.value for r in NodeRole]), default=NodeRole.AGENT.value,
              show_default=True, help="Role to join the cluster as. Only used with --join.")
@click.option('--token', '--join-token', '-t', 'token', envvar="K3P_NODE_TOKEN", default="",
              help="Token for the cluster. Required with --join, generated for --init-ha when unset.")
@click.option('--set', '-s', 'variables', multiple=True, metavar="KEY=VALUE",
              help="Value for a package variable. May be repeated.")
@click.option('--k3s-exec', '-x', 'exec_args', multiple=True,
              help="Extra flag for the k3s server or agent. May be repeated.")
@click.option('--api-port', type=int, default=K3S_API_PORT, show_default=True, help="Port for the k3s API server.")
@click.option('--host', '-H', default=None, help="Install on this remote host over ssh instead of locally.")
@click.option('--ssh-user', '-u', default="root", show_default=True, help="User to connect to --host as.")
@click.option('--ssh-password', '-p', envvar="K3P_SSH_PASSWORD", default=None,
              help="Password for the ssh user. Prompted for when neither it nor --private-key is given.")
@click.option('--private-key', '-k', type=click.Path(exists=True, dir_okay=False), default=None,
              help="Private key file for the ssh user.")
@click.option('--ssh-port', '-P', type=int, default=DEFAULT_SSH_PORT, show_default=True)
@handle_errors
def install(package_file, init_ha, accept_eula, join_url, join_role, token, variables, exec_args, api_port,
            host, ssh_user, ssh_password, private_key, ssh_port):
    """
    Install PACKAGE_FILE on this host, or on --host over ssh. Without --join the target becomes the first
    server of a new cluster.
    """
    if join_url and not token:
        raise click.UsageError("--token is required with --join")
    if join_url and init_ha:
        raise click.UsageError("--init-ha cannot be combined with --join")
    opts = InstallOptions(
        k3s_role=NodeRole(join_role) if join_url else NodeRole.SERVER,
        node_token=token,
        server_url=join_url,
        k3s_exec_args=list(exec_args),
        api_listen_port=api_port,
        init_ha=init_ha,
        accept_eula=accept_eula,
        variables=parse_variables(variables),
    )
    connect_opts = NodeConnectOptions(address="localhost", node_type=NodeType.LOCAL)
    if host:
        if not ssh_password and not private_key:
            ssh_password = click.prompt(f"SSH password for {ssh_user}@{host}", hide_input=True)
        connect_opts = NodeConnectOptions(
            address=host,
            ssh_user=ssh_user,
            ssh_password=ssh_password,
            ssh_key_file=private_key,
            ssh_port=ssh_port,
        )
    with archive.load_file(package_file) as pkg, node.connect(connect_opts) as target:
        Installer().install(target, pkg, opts)
    click.echo("k3s installation complete")
