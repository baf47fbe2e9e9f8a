import io
import logging
import secrets
import string
import typing

import click

from k3p import DEFAULT_TOKEN_LENGTH
from k3p import INSTALLED_CONFIG_FILE
from k3p import INSTALLED_PACKAGE_FILE
from k3p import ROOT_LOGGER_NAME
from k3p import SERVER_TOKEN_FILE
from k3p.archive import Package
from k3p.errors import K3pError
from k3p.models import Artifact
from k3p.models import ArtifactType
from k3p.models import InstallOptions
from k3p.models import InstalledConfig
from k3p.node import Node
from k3p.node import sync_package_to_node

logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.install")

_TOKEN_ALPHABET = string.ascii_letters + string.digits


class EULADeclinedError(K3pError):
    pass


def generate_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def prompt_eula(eula: Artifact) -> bool:
    """Page the EULA to the terminal and ask for acceptance."""
    try:
        text = eula.body.read().decode()
    finally:
        eula.close()
    click.echo_via_pager(text)
    return click.confirm("Do you accept the terms of the EULA?", default=False)


class Installer:
    """Lays a package down on a node and runs the k3s installation, as a first server or joining an existing one."""

    def __init__(self, eula_prompt: typing.Callable[[Artifact], bool] = prompt_eula):
        self._eula_prompt = eula_prompt

    def install(self, target: Node, pkg: Package, opts: InstallOptions):
        logger.info("copying the archive to the rancher installation directory")
        with pkg.archive() as sealed:
            target.write_file(sealed.reader(), INSTALLED_PACKAGE_FILE, "0644", sealed.size)

        meta = pkg.get_meta()
        if meta.manifest.eula:
            eula = pkg.get(Artifact(type=ArtifactType.EULA, name=meta.manifest.eula))
            if opts.accept_eula:
                eula.close()
            elif not self._eula_prompt(eula):
                raise EULADeclinedError("EULA was declined")

        package_config = meta.package_config
        if package_config is not None:
            package_config = package_config.apply_variables(opts.variables)
            logger.debug(f"package configuration: {package_config}")

        exec_opts = opts.to_exec_opts(package_config)
        if opts.init_ha and not opts.node_token:
            logger.info("generating a node token for additional control-plane instances")
            token = generate_token()
            logger.debug(f"writing the server token to {SERVER_TOKEN_FILE}")
            target.write_file(io.BytesIO(token.encode()), SERVER_TOKEN_FILE, "0600", len(token))
            exec_opts.env["K3S_TOKEN"] = token
            exec_opts.secrets.append(token)

        installed = InstalledConfig(install_options=opts).to_json()
        target.write_file(io.BytesIO(installed), INSTALLED_CONFIG_FILE, "0644", len(installed))

        sync_package_to_node(target, pkg, opts.variables)

        logger.info("running k3s installation script")
        target.execute(exec_opts)
