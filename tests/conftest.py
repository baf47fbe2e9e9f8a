import pytest

from k3p import archive
from k3p.models import Artifact
from k3p.models import ArtifactType


@pytest.fixture
def pkg(tmp_path):
    p = archive.new(str(tmp_path))
    yield p
    p.close()


@pytest.fixture
def populated_pkg(pkg):
    """A package with entries in every category, put in a deliberately mixed order."""
    pkg.put(Artifact.from_bytes(ArtifactType.MANIFEST, "app.yaml", b"replicas: %{ replicas }\n"))
    pkg.put(Artifact.from_bytes(ArtifactType.BIN, "k3s", b"\x7fELF-k3s"))
    pkg.put(Artifact.from_bytes(ArtifactType.IMAGES, "k3s-airgap-images.tar", b"image-bytes"))
    pkg.put(Artifact.from_bytes(ArtifactType.SCRIPT, "install.sh", b"#!/bin/sh\necho install\n"))
    pkg.put(Artifact.from_bytes(ArtifactType.BIN, "kubectl", b"\x7fELF-kubectl"))
    pkg.put(Artifact.from_bytes(ArtifactType.MANIFEST, "addons/dns.yaml", b"kind: Service\n"))
    return pkg


def read_sealed(p: archive.Package) -> bytes:
    with p.archive() as sealed:
        with sealed.reader() as r:
            return r.read()
