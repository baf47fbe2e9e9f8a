import logging

import click
from tabulate import tabulate

from k3p import archive
from k3p.build import BuildOptions
from k3p.build import build_package
from k3p.commands import handle_errors
from k3p.models import Artifact
from k3p.models import ArtifactType

logger = logging.getLogger("k3p.commands.package")

_file = click.Path(exists=True, dir_okay=False)


@click.command()
@click.option('--name', '-n', required=True, help="Name of the package.")
@click.option('--version', '-V', 'build_version', default="latest", show_default=True,
              help="Version to tag the package with.")
@click.option('--k3s-version', default="", help="Version of the k3s binaries being bundled.")
@click.option('--arch', default="amd64", show_default=True, help="CPU architecture the package targets.")
@click.option('--bin', 'bins', multiple=True, type=_file, help="Binary to include. May be repeated.")
@click.option('--script', 'scripts', multiple=True, type=_file,
              help="Script to include, e.g. the k3s install.sh. May be repeated.")
@click.option('--image', 'images', multiple=True, type=_file,
              help="Container image tarball to pre-load on nodes. May be repeated.")
@click.option('--static', 'static', multiple=True, type=_file, help="Static asset to include. May be repeated.")
@click.option('--manifests', '-m', 'manifest_dirs', multiple=True, type=click.Path(exists=True, file_okay=False),
              help="Directory to search for kubernetes manifests. May be repeated.")
@click.option('--exclude', '-e', 'excludes', multiple=True,
              help="Glob of manifest files or directories to skip. May be repeated.")
@click.option('--eula', 'eula_file', type=_file, help="EULA users must accept before installing.")
@click.option('--config', '-c', 'config_file', type=_file, help="Package configuration file.")
@click.option('--checksums', 'checksum_file', type=_file,
              help="sha256sum output to verify the included files against.")
@click.option('--output', '-o', default="package.tar", show_default=True, help="Where to write the package.")
@handle_errors
def build(name, build_version, k3s_version, arch, bins, scripts, images, static, manifest_dirs, excludes,
          eula_file, config_file, checksum_file, output):
    """ Build a package from local files. """
    build_package(BuildOptions(
        name=name,
        output=output,
        version=build_version,
        k3s_version=k3s_version,
        arch=arch,
        bins=list(bins),
        scripts=list(scripts),
        images=list(images),
        static=list(static),
        manifest_dirs=list(manifest_dirs),
        excludes=list(excludes),
        eula_file=eula_file,
        config_file=config_file,
        checksum_file=checksum_file,
    ))
    click.echo(f"wrote {output}")


@click.command()
@click.argument('package_file', type=_file)
@click.option('--details', '-D', is_flag=True, help="List every artifact with its size.")
@click.option('--manifest', '-m', 'manifest_name', default=None,
              help="Print the contents of the named kubernetes manifest.")
@handle_errors
def inspect(package_file, details, manifest_name):
    """ Show the metadata and contents of a package. """
    with archive.load_file(package_file) as pkg:
        if manifest_name:
            artifact = pkg.get(Artifact(type=ArtifactType.MANIFEST, name=manifest_name))
            with artifact.body:
                click.echo(artifact.body.read().decode())
            return

        meta = pkg.get_meta()
        click.echo(tabulate([
            ["Name", meta.name],
            ["Version", meta.version],
            ["K3s Version", meta.k3s_version],
            ["Architecture", meta.arch],
            ["Has EULA", "yes" if meta.manifest.eula else "no"],
        ], tablefmt="plain"))

        rows = []
        for t, name in meta.manifest.artifacts():
            row = [t.value, name]
            if details:
                artifact = pkg.get(Artifact(type=t, name=name))
                artifact.close()
                row.append(artifact.size)
            rows.append(row)
        headers = ["TYPE", "NAME"] + (["SIZE"] if details else [])
        click.echo()
        click.echo(tabulate(rows, headers=headers))
