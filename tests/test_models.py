import hashlib
import json

import pytest

from k3p.errors import IntegrityError
from k3p.errors import MalformedInputError
from k3p.models import Artifact
from k3p.models import ArtifactType
from k3p.models import InstallOptions
from k3p.models import InstalledConfig
from k3p.models import Manifest
from k3p.models import NodeRole
from k3p.models import PackageConfig
from k3p.models import PackageMeta


@pytest.mark.parametrize(
    "t, directory",
    [
        (ArtifactType.BIN, "bin"),
        (ArtifactType.IMAGES, "images"),
        (ArtifactType.SCRIPT, "scripts"),
        (ArtifactType.MANIFEST, "manifests"),
        (ArtifactType.EULA, ""),
        (ArtifactType.STATIC, ""),
    ],
)
def test_artifact_type_directory(t, directory):
    assert t.directory == directory


def test_artifact_verify():
    data = b"some binary"
    a = Artifact.from_bytes(ArtifactType.BIN, "k3s", data)
    a.verify(hashlib.sha256(data).hexdigest().upper())
    # body is still readable after verification
    assert a.body.read() == data
    assert a.size == len(data)


def test_artifact_verify_mismatch():
    a = Artifact.from_bytes(ArtifactType.BIN, "k3s", b"tampered")
    with pytest.raises(IntegrityError, match="sha256 mismatch in bin k3s"):
        a.verify(hashlib.sha256(b"original").hexdigest())


def test_artifact_apply_variables():
    a = Artifact.from_bytes(ArtifactType.MANIFEST, "app.yaml", b"replicas: %{ replicas }\nname: %{ name }\n%{name}")
    a.apply_variables({"replicas": "3", "name": "web"})
    body = a.body.read()
    assert body == b"replicas: 3\nname: web\n%{name}"
    assert a.size == len(body)


def test_artifact_from_file(tmp_path):
    p = tmp_path / "k3s"
    p.write_bytes(b"12345")
    a = Artifact.from_file(ArtifactType.BIN, "k3s", p)
    assert a.size == 5
    a.close()
    assert a.body.closed


def test_manifest_add_keeps_order_and_dedups():
    m = Manifest()
    m.add(ArtifactType.BIN, "k3s")
    m.add(ArtifactType.MANIFEST, "a.yaml")
    m.add(ArtifactType.BIN, "kubectl")
    m.add(ArtifactType.BIN, "k3s")
    m.add(ArtifactType.EULA, "EULA.txt")
    assert m.bins == ["k3s", "kubectl"]
    assert m.artifacts() == [
        (ArtifactType.BIN, "k3s"),
        (ArtifactType.BIN, "kubectl"),
        (ArtifactType.MANIFEST, "a.yaml"),
        (ArtifactType.EULA, "EULA.txt"),
    ]
    assert m.contains(ArtifactType.EULA, "EULA.txt")
    assert not m.contains(ArtifactType.SCRIPT, "k3s")


def test_package_meta_json():
    meta = PackageMeta(name="demo", version="v1.0.0", k3s_version="v1.19.4+k3s1", arch="arm64")
    meta.manifest.add(ArtifactType.BIN, "k3s")
    meta.manifest.add(ArtifactType.MANIFEST, "app.yaml")
    raw = meta.to_json()

    d = json.loads(raw)
    assert d["apiVersion"] == "v1"
    assert d["k3sVersion"] == "v1.19.4+k3s1"
    assert d["manifest"]["bins"] == ["k3s"]
    assert d["manifest"]["k8sManifests"] == ["app.yaml"]
    assert "eula" not in d["manifest"]
    assert "packageConfig" not in d

    loaded = PackageMeta.from_json(raw)
    assert loaded == meta


def test_package_meta_invalid_json():
    with pytest.raises(MalformedInputError):
        PackageMeta.from_json(b"{not json")


def test_package_meta_merge_leaves_manifest():
    meta = PackageMeta(name="demo")
    meta.manifest.add(ArtifactType.BIN, "k3s")
    other = PackageMeta(version="v2", arch="amd64")
    other.manifest.add(ArtifactType.BIN, "other")
    meta.merge(other)
    assert meta.name == "demo"
    assert meta.version == "v2"
    assert meta.arch == "amd64"
    assert meta.manifest.bins == ["k3s"]


PLAIN_CONFIG = """
serverConfig:
  disable: traefik
  node-label:
    - role=edge
    - zone=a
  secrets-encryption: ""
agentConfig:
  node-ip: 10.0.0.5
"""

TEMPLATED_CONFIG = """
variables:
  - name: cidr
    prompt: Cluster CIDR
    default: 10.42.0.0/16
  - name: replicas
    default: 3
---
serverConfig:
  cluster-cidr: {{ Vars.cidr }}
"""


def test_package_config_plain():
    cfg = PackageConfig.from_yaml(PLAIN_CONFIG)
    assert cfg.server_config["disable"] == "traefik"
    assert cfg.server_args() == [
        "--disable=traefik",
        "--node-label=role=edge",
        "--node-label=zone=a",
        "--secrets-encryption",
    ]
    assert cfg.agent_args() == ["--node-ip=10.0.0.5"]


def test_package_config_overrides_win():
    cfg = PackageConfig.from_yaml(PLAIN_CONFIG)
    args = cfg.server_args(["--disable=servicelb", "--secrets-encryption"])
    assert args == ["--disable=servicelb", "--secrets-encryption", "--node-label=role=edge", "--node-label=zone=a"]


def test_package_config_variables():
    cfg = PackageConfig.from_yaml(TEMPLATED_CONFIG)
    assert [v.name for v in cfg.variables] == ["cidr", "replicas"]
    assert cfg.default_vars() == {"cidr": "10.42.0.0/16", "replicas": "3"}
    assert cfg.server_args() == ["--cluster-cidr=10.42.0.0/16"]

    applied = cfg.apply_variables({"cidr": "10.100.0.0/16"})
    assert applied.server_args() == ["--cluster-cidr=10.100.0.0/16"]


def test_package_config_survives_meta_round_trip():
    meta = PackageMeta(name="demo", package_config=PackageConfig.from_yaml(TEMPLATED_CONFIG))
    loaded = PackageMeta.from_json(meta.to_json())
    assert loaded.package_config.server_args() == ["--cluster-cidr=10.42.0.0/16"]


def test_package_config_dashes_inside_values():
    raw = (
        "variables:\n"
        "  - name: label\n"
        "    default: tier---edge\n"
        "---   \n"
        "serverConfig:\n"
        "  node-label: 'group={{ Vars.label }}'\n"
        "  node-taint: 'a---b=c:NoSchedule'\n"
    )
    cfg = PackageConfig.from_yaml(raw)
    assert cfg.server_args() == ["--node-label=group=tier---edge", "--node-taint=a---b=c:NoSchedule"]


def test_package_config_invalid():
    with pytest.raises(MalformedInputError):
        PackageConfig.from_yaml("serverConfig: {{ Vars.missing }}\n")


def test_install_options_agent_join():
    opts = InstallOptions(k3s_role=NodeRole.AGENT, node_token="s3cr3t", server_url="https://10.0.0.1:6443")
    ex = opts.to_exec_opts()
    assert ex.command == "/usr/local/bin/k3p-scripts/install.sh"
    assert ex.env["K3S_URL"] == "https://10.0.0.1:6443"
    assert ex.env["K3S_TOKEN"] == "s3cr3t"
    assert ex.env["INSTALL_K3S_EXEC"] == "agent"
    assert ex.env["INSTALL_K3S_SKIP_DOWNLOAD"] == "true"
    assert ex.secrets == ["s3cr3t"]
    assert ex.log_prefix == "K3S"


def test_install_options_server_join_with_config():
    cfg = PackageConfig.from_yaml(PLAIN_CONFIG)
    opts = InstallOptions(k3s_role=NodeRole.SERVER, node_token="tok", server_url="https://10.0.0.1:6443")
    ex = opts.to_exec_opts(cfg)
    assert "K3S_URL" not in ex.env
    assert ex.env["INSTALL_K3S_EXEC"] == (
        "server --server https://10.0.0.1:6443 --disable=traefik --node-label=role=edge --node-label=zone=a "
        "--secrets-encryption"
    )


def test_install_options_init_ha():
    ex = InstallOptions(init_ha=True, api_listen_port=7443).to_exec_opts()
    assert ex.env["INSTALL_K3S_EXEC"] == "server --https-listen-port 7443 --cluster-init"
    assert "K3S_TOKEN" not in ex.env
    assert ex.secrets == []


def test_installed_config_drops_token():
    opts = InstallOptions(node_token="s3cr3t", api_listen_port=7443, variables={"a": "b"})
    raw = InstalledConfig(install_options=opts).to_json()
    assert b"s3cr3t" not in raw
    loaded = InstalledConfig.from_json(raw)
    assert loaded.install_options.api_listen_port == 7443
    assert loaded.install_options.variables == {"a": "b"}
    assert loaded.install_options.k3s_role == NodeRole.SERVER
    assert loaded.install_options.node_token == ""
