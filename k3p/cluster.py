import dataclasses
import logging
import typing

from k3p import AGENT_TOKEN_FILE
from k3p import INSTALLED_CONFIG_FILE
from k3p import INSTALLED_PACKAGE_FILE
from k3p import ROOT_LOGGER_NAME
from k3p import SERVER_TOKEN_FILE
from k3p import archive
from k3p.models import AddNodeOptions
from k3p.models import InstalledConfig
from k3p.models import NodeConnectOptions
from k3p.models import NodeRole
from k3p.node import Node
from k3p.node import connect
from k3p.node import sync_package_to_node

logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.cluster")

TOKEN_FILES = {
    NodeRole.SERVER: SERVER_TOKEN_FILE,
    NodeRole.AGENT: AGENT_TOKEN_FILE,
}


def read_token(node: Node, role: NodeRole) -> str:
    try:
        path = TOKEN_FILES[NodeRole(role)]
    except (KeyError, ValueError) as e:
        raise ValueError(f"invalid node role {role!r}") from e
    with node.get_file(path) as f:
        return f.read().decode().strip()


def read_installed_config(node: Node) -> InstalledConfig:
    try:
        with node.get_file(INSTALLED_CONFIG_FILE) as f:
            return InstalledConfig.from_json(f.read())
    except FileNotFoundError:
        logger.debug(f"{INSTALLED_CONFIG_FILE} not found, using default install options")
        return InstalledConfig()


class ClusterManager:
    """
    Grows a cluster from its leader: the node the package was first installed on, normally the local host.
    """

    def __init__(self, leader: Node, node_factory: typing.Callable[[NodeConnectOptions], Node] = connect,
                 tmp_dir: typing.Optional[str] = None):
        self._leader = leader
        self._node_factory = node_factory
        self._tmp_dir = tmp_dir

    def add_node(self, opts: AddNodeOptions):
        """
        Join a new node to the cluster. Every step runs in order and any failure aborts the join, leaving
        whatever already reached the new node in place.
        """
        role = NodeRole(opts.node_role)
        address = self._leader.get_k3s_address()
        logger.info(f"leader k3s address is {address}")

        pkg = archive.load(self._leader.get_file(INSTALLED_PACKAGE_FILE), self._tmp_dir)
        try:
            meta = pkg.get_meta()
            logger.info(f"loaded installed package {meta.name} {meta.version}")
            token = read_token(self._leader, role)
            installed = read_installed_config(self._leader)

            logger.info(f"connecting to new node {opts.node_connect.address}")
            new_node = self._node_factory(opts.node_connect)
            try:
                sync_package_to_node(new_node, pkg, installed.install_options.variables)

                recorded = installed.install_options
                install_opts = dataclasses.replace(
                    recorded,
                    k3s_role=role,
                    node_token=token,
                    server_url=f"https://{address}:{recorded.api_listen_port}",
                    # the cluster is already initialized
                    init_ha=False,
                    k3s_exec_args=list(recorded.k3s_exec_args),
                    variables=dict(recorded.variables),
                )
                package_config = meta.package_config
                if package_config is not None and install_opts.variables:
                    package_config = package_config.apply_variables(install_opts.variables)
                logger.info(f"joining {opts.node_connect.address} to the cluster as {role.value}")
                new_node.execute(install_opts.to_exec_opts(package_config))
            finally:
                new_node.close()
        finally:
            pkg.close()
        logger.info(f"node {opts.node_connect.address} joined the cluster")
