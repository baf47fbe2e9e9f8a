import fnmatch
import logging
import os
import pathlib
import typing
from dataclasses import dataclass
from dataclasses import field

from k3p import MANIFEST_EULA_FILE
from k3p import ROOT_LOGGER_NAME
from k3p import archive
from k3p.errors import MalformedInputError
from k3p.models import Artifact
from k3p.models import ArtifactType
from k3p.models import PackageConfig
from k3p.models import PackageMeta

logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.build")

MANIFEST_SUFFIXES = (".yaml", ".yml")


@dataclass
class BuildOptions:
    name: str
    output: str
    version: str = "latest"
    k3s_version: str = ""
    arch: str = "amd64"
    bins: typing.List[str] = field(default_factory=list)
    scripts: typing.List[str] = field(default_factory=list)
    images: typing.List[str] = field(default_factory=list)
    static: typing.List[str] = field(default_factory=list)
    manifest_dirs: typing.List[str] = field(default_factory=list)
    excludes: typing.List[str] = field(default_factory=list)
    eula_file: typing.Optional[str] = None
    config_file: typing.Optional[str] = None
    checksum_file: typing.Optional[str] = None


def read_checksums(path: typing.Union[str, pathlib.Path]) -> typing.Dict[str, str]:
    """Parse `sha256sum` output: `<digest>  <file>` per line, `*` marking binary mode."""
    rv = {}
    for i, line in enumerate(pathlib.Path(path).read_text().splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            raise MalformedInputError(f"{path}:{i}: expected '<sha256> <file>', got {line!r}")
        digest, name = parts
        rv[os.path.basename(name.lstrip("*"))] = digest
    return rv


def find_manifests(root: typing.Union[str, pathlib.Path], excludes: typing.Sequence[str] = ()) -> \
        typing.List[typing.Tuple[str, pathlib.Path]]:
    """(name relative to root, path) for every kubernetes manifest under root, sorted by name."""
    root = pathlib.Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"manifest directory {root} does not exist")
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        dirnames[:] = sorted(
            d for d in dirnames
            if not _excluded(os.path.normpath(os.path.join(rel_dir, d)), d, excludes)
        )
        for fname in filenames:
            rel = os.path.normpath(os.path.join(rel_dir, fname))
            if not fname.endswith(MANIFEST_SUFFIXES) or _excluded(rel, fname, excludes):
                continue
            found.append((rel.replace(os.sep, "/"), pathlib.Path(dirpath) / fname))
    return sorted(found)


def _excluded(rel: str, base: str, excludes: typing.Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(rel, pat) or fnmatch.fnmatch(base, pat) for pat in excludes)


def build_package(opts: BuildOptions, tmp_dir: typing.Optional[str] = None) -> PackageMeta:
    """Assemble a package from local files and write the sealed archive to opts.output."""
    logger.info(f"building package {opts.name!r}")
    checksums = read_checksums(opts.checksum_file) if opts.checksum_file else {}

    meta = PackageMeta(name=opts.name, version=opts.version, k3s_version=opts.k3s_version, arch=opts.arch)
    if opts.config_file:
        logger.debug(f"reading package config at {opts.config_file}")
        meta.package_config = PackageConfig.from_yaml(pathlib.Path(opts.config_file).read_text())

    with archive.new(tmp_dir) as pkg:
        sources = [(ArtifactType.BIN, path) for path in opts.bins]
        sources += [(ArtifactType.SCRIPT, path) for path in opts.scripts]
        sources += [(ArtifactType.IMAGES, path) for path in opts.images]
        sources += [(ArtifactType.STATIC, path) for path in opts.static]
        for t, path in sources:
            _put_file(pkg, t, os.path.basename(path), path, checksums)

        for manifest_dir in opts.manifest_dirs:
            logger.info(f"searching {manifest_dir!r} for kubernetes manifests to include in the archive")
            for name, path in find_manifests(manifest_dir, opts.excludes):
                _put_file(pkg, ArtifactType.MANIFEST, name, path, checksums)

        if opts.eula_file:
            logger.info(f"adding EULA from {opts.eula_file!r}")
            _put_file(pkg, ArtifactType.EULA, MANIFEST_EULA_FILE, opts.eula_file, checksums)

        logger.info("writing package metadata")
        pkg.put_meta(meta)

        logger.info(f"writing version {opts.version!r} of {opts.name!r} to {opts.output!r}")
        with pkg.archive() as sealed:
            sealed.write_to(opts.output)
        return pkg.get_meta()


def _put_file(pkg: archive.Package, t: ArtifactType, name: str, path, checksums: typing.Mapping[str, str]):
    artifact = Artifact.from_file(t, name, path)
    digest = checksums.get(os.path.basename(str(path)))
    if digest:
        logger.debug(f"verifying sha256 of {path}")
        try:
            artifact.verify(digest)
        except Exception:
            artifact.close()
            raise
    pkg.put(artifact)
