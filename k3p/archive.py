"""
Package archive engine.

A Package stages artifacts in a private working directory laid out the same way as the sealed tarball:

  bin/<name>          binaries
  images/<name>       container image tarballs
  scripts/<name>      scripts
  manifests/<name>    kubernetes manifests
  <name>              everything else (EULA, static assets)
  manifest.json       package metadata, always the last tar entry

Every call to Package.archive() builds a fresh tarball from the staged files, so the sealed output always
reflects the current manifest and nothing that is missing from it.
"""
import io
import logging
import os
import pathlib
import posixpath
import shutil
import tarfile
import tempfile
import time
import typing
from contextlib import AbstractContextManager

from k3p import MANIFEST_META_FILE
from k3p import ROOT_LOGGER_NAME
from k3p.errors import ArtifactNotFoundError
from k3p.errors import MalformedInputError
from k3p.models import Artifact
from k3p.models import ArtifactType
from k3p.models import PackageMeta

logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.archive")

_CONTENTS_DIR = "contents"
_ARCHIVES_DIR = "archives"


def _tar_filter(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = "root"
    tarinfo.gname = "root"
    return tarinfo


def _safe_relpath(name: str) -> str:
    """Normalize an in-package path, refusing anything that would escape the package root."""
    norm = posixpath.normpath(name.replace("\\", "/"))
    if not name or norm.startswith("/") or norm == ".." or norm.startswith("../") or norm == ".":
        raise MalformedInputError(f"invalid artifact path {name!r}")
    return norm


def _strip_type_prefix(t: ArtifactType, name: str) -> str:
    prefix = f"{t.directory}/" if t.directory else ""
    if prefix and name.startswith(prefix):
        return name[len(prefix):]
    return name


def _archive_name(t: ArtifactType, name: str) -> str:
    return _safe_relpath(posixpath.join(t.directory, name) if t.directory else name)


def _check_root_name(t: ArtifactType, name: str):
    """Names stored at the package root must not shadow the metadata file or another type's directory."""
    if t.directory:
        return
    norm = _safe_relpath(name)
    reserved = {other.directory for other in ArtifactType if other.directory}
    if norm == MANIFEST_META_FILE or norm.split("/", 1)[0] in reserved:
        raise MalformedInputError(f"{t.value} artifact name {name!r} is reserved")


class Archive(AbstractContextManager):
    """
    A sealed, read-only snapshot of a Package. The owner must close it. The stream returned by reader()
    can be consumed once; write_to() may be used any number of times.
    """

    def __init__(self, path: typing.Union[str, pathlib.Path]):
        self._path = pathlib.Path(path)
        self._size = self._path.stat().st_size
        self._reader: typing.Optional[typing.BinaryIO] = None
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    def reader(self) -> typing.BinaryIO:
        self._check_open()
        if self._reader is not None:
            raise ValueError("archive stream already consumed")
        self._reader = open(self._path, "rb")
        return self._reader

    def write_to(self, dest: typing.Union[str, pathlib.Path], mode: int = 0o644):
        self._check_open()
        dest = pathlib.Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self._path, dest)
        dest.chmod(mode)
        logger.debug(f"wrote archive ({self._size} bytes) to {dest}")

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._reader is not None:
            self._reader.close()
        try:
            self._path.unlink()
        except FileNotFoundError:
            # the owning package was closed first
            pass

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _check_open(self):
        if self._closed:
            raise ValueError("archive is closed")


class Package(AbstractContextManager):
    """
    A mutable, in-progress package. Not safe for concurrent put() calls.
    """

    def __init__(self, work_dir: typing.Union[str, pathlib.Path], meta: typing.Optional[PackageMeta] = None):
        self.work_dir = pathlib.Path(work_dir)
        self._contents = self.work_dir / _CONTENTS_DIR
        self._archives = self.work_dir / _ARCHIVES_DIR
        self._contents.mkdir(parents=True, exist_ok=True)
        self._archives.mkdir(parents=True, exist_ok=True)
        self._meta = meta if meta is not None else PackageMeta()

    def _path_for(self, t: ArtifactType, name: str) -> pathlib.Path:
        return self._contents / _archive_name(t, name)

    def put(self, artifact: Artifact):
        """
        Stage the artifact body under the directory for its type and record it in the manifest.
        The body is closed on every path. A failed put leaves the manifest untouched.
        """
        try:
            name = _strip_type_prefix(artifact.type, artifact.name)
            _check_root_name(artifact.type, name)
            dest = self._path_for(artifact.type, name)
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(dest, "wb") as f:
                shutil.copyfileobj(artifact.body, f)
                size = f.tell()
        except OSError as e:
            logger.error(f"failed to put {artifact.type.value} artifact {artifact.name!r}: {e}")
            raise
        finally:
            artifact.close()
        self._meta.manifest.add(artifact.type, name)
        logger.debug(f"put {artifact.type.value} artifact {name} ({size} bytes)")

    def put_meta(self, meta: PackageMeta):
        self._meta.merge(meta)

    def get(self, artifact: Artifact) -> Artifact:
        """
        Populate body and size of the given artifact from the package. A name that already carries its
        type directory is accepted and the directory is stripped from the returned artifact's name.
        """
        name = _strip_type_prefix(artifact.type, artifact.name)
        if not self._meta.manifest.contains(artifact.type, name):
            raise ArtifactNotFoundError(f"{artifact.type.value} artifact {artifact.name!r} not found")
        path = self._path_for(artifact.type, name)
        try:
            f = open(path, "rb")
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"{artifact.type.value} artifact {artifact.name!r} not found") from e
        artifact.name = name
        artifact.body = f
        artifact.size = os.fstat(f.fileno()).st_size
        return artifact

    def get_meta(self) -> PackageMeta:
        return self._meta

    def archive(self) -> Archive:
        """Seal the current contents into a new tarball, metadata last."""
        fd, path = tempfile.mkstemp(prefix="package-", suffix=".tar", dir=self._archives)
        try:
            with os.fdopen(fd, "wb") as f, tarfile.open(fileobj=f, mode="w") as tar:
                for t, name in self._meta.manifest.artifacts():
                    tar.add(str(self._path_for(t, name)), arcname=_archive_name(t, name), filter=_tar_filter)
                raw_meta = self._meta.to_json()
                info = tarfile.TarInfo(MANIFEST_META_FILE)
                info.size = len(raw_meta)
                info.mode = 0o644
                info.mtime = int(time.time())
                tar.addfile(_tar_filter(info), io.BytesIO(raw_meta))
        except OSError:
            os.unlink(path)
            raise
        archive = Archive(path)
        logger.debug(f"sealed package {self._meta.name or '<unnamed>'} ({archive.size} bytes)")
        return archive

    def close(self):
        """Remove all working storage. Safe to call more than once."""
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


def new(tmp_dir: typing.Optional[str] = None) -> Package:
    return Package(tempfile.mkdtemp(prefix="k3p-", dir=tmp_dir))


def load(rdr: typing.BinaryIO, tmp_dir: typing.Optional[str] = None) -> Package:
    """
    Unpack a sealed archive stream into a new Package. The stream is read sequentially, so
    non-seekable sources (pipes, SSH channels) work, and it is always closed.
    """
    pkg = new(tmp_dir)
    raw_meta = None
    try:
        with rdr, tarfile.open(fileobj=rdr, mode="r|") as tar:
            for member in tar:
                if not member.isreg():
                    continue
                rel = _safe_relpath(member.name)
                src = tar.extractfile(member)
                if rel == MANIFEST_META_FILE:
                    raw_meta = src.read()
                    continue
                dest = pkg._contents / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                with open(dest, "wb") as f:
                    shutil.copyfileobj(src, f)
        if raw_meta is None:
            raise ArtifactNotFoundError(f"package metadata {MANIFEST_META_FILE!r} not found")
        pkg._meta = PackageMeta.from_json(raw_meta)
    except tarfile.TarError as e:
        pkg.close()
        raise MalformedInputError(f"failed to read package archive: {e}") from e
    except Exception:
        pkg.close()
        raise
    logger.debug(f"loaded package {pkg._meta.name} {pkg._meta.version}")
    return pkg


def load_file(path: typing.Union[str, pathlib.Path], tmp_dir: typing.Optional[str] = None) -> Package:
    return load(open(path, "rb"), tmp_dir)
