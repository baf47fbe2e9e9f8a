import hashlib
import io
import json
import logging
import re
import typing
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from enum import Enum

import jinja2
import yaml

from k3p import DEFAULT_SSH_PORT
from k3p import INSTALL_SCRIPT
from k3p import K3S_API_PORT
from k3p import K3S_SCRIPTS_DIR
from k3p import META_VERSION
from k3p import ROOT_LOGGER_NAME
from k3p.errors import IntegrityError
from k3p.errors import MalformedInputError

logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.models")

_DOC_SEPARATOR = re.compile(r"^---[ \t]*$", re.M)


class ArtifactType(str, Enum):
    BIN = "bin"
    IMAGES = "images"
    SCRIPT = "script"
    MANIFEST = "manifest"
    EULA = "eula"
    STATIC = "static"

    @property
    def directory(self) -> str:
        """Directory inside a package holding artifacts of this type. Empty means the package root."""
        return _ARTIFACT_DIRS.get(self, "")


_ARTIFACT_DIRS = {
    ArtifactType.BIN: "bin",
    ArtifactType.IMAGES: "images",
    ArtifactType.SCRIPT: "scripts",
    ArtifactType.MANIFEST: "manifests",
}


class NodeRole(str, Enum):
    SERVER = "server"
    AGENT = "agent"


class NodeType(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    DOCKER = "docker"


def _from_dict(field_type, data):
    """Recursively convert a dictionary to a dataclass."""
    if isinstance(data, list):
        return [_from_dict(typing.get_args(field_type)[0], item) for item in data]
    elif isinstance(data, dict) and hasattr(field_type, '__dataclass_fields__'):
        known = field_type.__dataclass_fields__
        fieldtypes = {}
        for f in known.values():
            type_args = typing.get_args(f.type)
            if type(None) in type_args and len(type_args) == 2:  # handle Optional[X] types -> cast to X
                fieldtypes[f.name] = type_args[0]
            else:
                fieldtypes[f.name] = f.type
        return field_type(**{f: _from_dict(fieldtypes[f], data[f]) for f in data if f in known})
    elif isinstance(field_type, type) and issubclass(field_type, Enum):
        return field_type(data)
    else:
        return data


def _remove_null_entries(d):
    """Recursively remove keys with None values from a dictionary."""
    if isinstance(d, list):
        return [_remove_null_entries(item) for item in d if item is not None]
    if not isinstance(d, dict):
        return d
    return {
        k: _remove_null_entries(v)
        for k, v in d.items()
        if v is not None
    }


@dataclass
class Artifact:
    """
    A named, typed payload stored in or read back from a package. `body` is a binary stream owned by
    whoever currently holds the artifact. Package.put and Node.write_file always close it.
    """
    type: ArtifactType
    name: str
    body: typing.Optional[typing.BinaryIO] = None
    size: int = 0

    @classmethod
    def from_bytes(cls, type: ArtifactType, name: str, data: bytes) -> 'Artifact':
        return cls(type=type, name=name, body=io.BytesIO(data), size=len(data))

    @classmethod
    def from_file(cls, type: ArtifactType, name: str, path) -> 'Artifact':
        f = open(path, "rb")
        try:
            f.seek(0, io.SEEK_END)
            size = f.tell()
            f.seek(0)
        except OSError:
            f.close()
            raise
        return cls(type=type, name=name, body=f, size=size)

    def close(self):
        if self.body is not None:
            self.body.close()

    def read_all(self) -> bytes:
        """Read the whole body, close it, and replace it with a fresh in-memory copy."""
        try:
            data = self.body.read()
        finally:
            self.body.close()
        self.body = io.BytesIO(data)
        self.size = len(data)
        return data

    def verify(self, sha256: str):
        """Compare the body against the expected digest. The body stays readable afterwards."""
        digest = hashlib.sha256(self.read_all()).hexdigest()
        if digest != sha256.strip().lower():
            raise IntegrityError(f"sha256 mismatch in {self.type.value} {self.name}")

    def apply_variables(self, variables: typing.Mapping[str, str]):
        """Replace every `%{ KEY }` in the body with the matching value."""
        text = self.read_all().decode()
        for key, value in variables.items():
            text = text.replace(f"%{{ {key} }}", value)
        data = text.encode()
        self.body = io.BytesIO(data)
        self.size = len(data)


@dataclass
class Manifest:
    bins: typing.List[str] = field(default_factory=list)
    scripts: typing.List[str] = field(default_factory=list)
    images: typing.List[str] = field(default_factory=list)
    k8s_manifests: typing.List[str] = field(default_factory=list)
    static: typing.List[str] = field(default_factory=list)
    eula: str = ""

    def _entries(self, t: ArtifactType) -> typing.List[str]:
        return {
            ArtifactType.BIN: self.bins,
            ArtifactType.SCRIPT: self.scripts,
            ArtifactType.IMAGES: self.images,
            ArtifactType.MANIFEST: self.k8s_manifests,
            ArtifactType.STATIC: self.static,
        }.get(t)

    def names(self, t: ArtifactType) -> typing.List[str]:
        if t == ArtifactType.EULA:
            return [self.eula] if self.eula else []
        return list(self._entries(t))

    def add(self, t: ArtifactType, name: str):
        """Record (t, name). Recording the same artifact twice keeps its original position."""
        if t == ArtifactType.EULA:
            self.eula = name
            return
        entries = self._entries(t)
        if name not in entries:
            entries.append(name)

    def contains(self, t: ArtifactType, name: str) -> bool:
        if t == ArtifactType.EULA:
            return bool(self.eula) and self.eula == name
        return name in self._entries(t)

    def artifacts(self) -> typing.List[typing.Tuple[ArtifactType, str]]:
        """Every recorded (type, name) in sync order: bins, scripts, images, manifests, static, eula."""
        rv = []
        for t in (ArtifactType.BIN, ArtifactType.SCRIPT, ArtifactType.IMAGES,
                  ArtifactType.MANIFEST, ArtifactType.STATIC):
            rv.extend((t, name) for name in self._entries(t))
        if self.eula:
            rv.append((ArtifactType.EULA, self.eula))
        return rv

    def as_dict(self) -> dict:
        d = {
            "bins": list(self.bins),
            "scripts": list(self.scripts),
            "images": list(self.images),
            "k8sManifests": list(self.k8s_manifests),
            "static": list(self.static),
        }
        if self.eula:
            d["eula"] = self.eula
        return d

    @classmethod
    def from_dict(cls, d: typing.Optional[dict]) -> 'Manifest':
        d = d or {}
        return cls(
            bins=list(d.get("bins") or []),
            scripts=list(d.get("scripts") or []),
            images=list(d.get("images") or []),
            k8s_manifests=list(d.get("k8sManifests") or []),
            static=list(d.get("static") or []),
            eula=d.get("eula") or "",
        )


@dataclass
class PackageVariable:
    name: str
    prompt: typing.Optional[str] = None
    default: typing.Optional[str] = None


FlagValue = typing.Union[str, int, typing.List[typing.Union[str, int]]]


@dataclass
class PackageConfig:
    """
    Distributor configuration bundled with a package. `server_config` and `agent_config` map long-form k3s
    flags (no leading "--") to a value. Values may reference variables with `{{ Vars.NAME }}`.
    """
    variables: typing.List[PackageVariable] = field(default_factory=list)
    server_config: typing.Dict[str, FlagValue] = field(default_factory=dict)
    agent_config: typing.Dict[str, FlagValue] = field(default_factory=dict)
    raw: str = ""

    @classmethod
    def from_yaml(cls, raw: str, variables: typing.Optional[typing.Mapping[str, str]] = None) -> 'PackageConfig':
        # Multi-pass load: plain yaml first, then collect variables section by section and template with them.
        parts = _DOC_SEPARATOR.split(raw)
        joined = "\n".join(parts)
        text = _render(joined, variables) if variables is not None else joined
        logger.debug("attempting first pass load of package config")
        try:
            cfg = cls._from_parsed(yaml.safe_load(text), raw)
            if "{{" not in text:
                return cfg
        except (yaml.YAMLError, TypeError, AttributeError) as e:
            logger.debug(f"could not load package config on first pass: {e}")

        found: typing.List[PackageVariable] = []
        for part in parts:
            try:
                doc = yaml.safe_load(part)
            except yaml.YAMLError as e:
                logger.debug(f"could not load package config section: {e}")
                continue
            if isinstance(doc, dict) and doc.get("variables"):
                found.extend(_from_dict(typing.List[PackageVariable], doc["variables"]))
        if not found:
            raise MalformedInputError("could not load package config as yaml and no variables found for templating")

        merged = {v.name: "" if v.default is None else str(v.default) for v in found}
        merged.update(variables or {})
        try:
            return cls._from_parsed(yaml.safe_load(_render(joined, merged)), raw)
        except (yaml.YAMLError, TypeError, AttributeError) as e:
            raise MalformedInputError(f"invalid package config: {e}") from e

    @classmethod
    def _from_parsed(cls, doc, raw: str) -> 'PackageConfig':
        doc = doc or {}
        if not isinstance(doc, dict):
            raise TypeError(f"package config must be a mapping, got {type(doc).__name__}")
        return cls(
            variables=_from_dict(typing.List[PackageVariable], doc.get("variables") or []),
            server_config=dict(doc.get("serverConfig") or {}),
            agent_config=dict(doc.get("agentConfig") or {}),
            raw=raw,
        )

    def apply_variables(self, variables: typing.Mapping[str, str]) -> 'PackageConfig':
        """Re-render the raw configuration with install-time variables layered over the defaults."""
        merged = self.default_vars()
        merged.update(variables)
        return PackageConfig.from_yaml(self.raw, merged)

    def default_vars(self) -> typing.Dict[str, str]:
        return {v.name: "" if v.default is None else str(v.default) for v in self.variables}

    def server_args(self, overrides: typing.Sequence[str] = ()) -> typing.List[str]:
        return _merge_flags(self.server_config, overrides)

    def agent_args(self, overrides: typing.Sequence[str] = ()) -> typing.List[str]:
        return _merge_flags(self.agent_config, overrides)

    def as_dict(self) -> dict:
        return {"raw": self.raw}


def _render(body: str, variables: typing.Mapping[str, str]) -> str:
    try:
        return jinja2.Template(body, undefined=jinja2.StrictUndefined).render(Vars=dict(variables))
    except jinja2.TemplateError as e:
        raise MalformedInputError(f"failed to render package config: {e}") from e


def _merge_flags(config: typing.Mapping[str, FlagValue], overrides: typing.Sequence[str]) -> typing.List[str]:
    out = list(overrides)
    present = {o.lstrip("-").split("=", 1)[0] for o in overrides}
    for flag, value in config.items():
        if flag not in present:
            out.extend(_flag_args(flag, value))
    return out


def _flag_args(key: str, value) -> typing.List[str]:
    if value is None or value == "":
        return [f"--{key}"]
    if isinstance(value, bool):
        return [f"--{key}={str(value).lower()}"]
    if isinstance(value, (str, int)):
        return [f"--{key}={value}"]
    if isinstance(value, list):
        rv = []
        for v in value:
            rv.extend(_flag_args(key, v))
        return rv
    logger.warning(f"invalid type for value {value!r} in {key}, ignoring")
    return []


@dataclass
class PackageMeta:
    meta_version: str = META_VERSION
    name: str = ""
    version: str = ""
    k3s_version: str = ""
    arch: str = ""
    manifest: Manifest = field(default_factory=Manifest)
    package_config: typing.Optional[PackageConfig] = None

    def merge(self, other: 'PackageMeta'):
        """Take every non-empty scalar field and the package config from other. The manifest is left alone."""
        for attr in ("meta_version", "name", "version", "k3s_version", "arch"):
            value = getattr(other, attr)
            if value:
                setattr(self, attr, value)
        if other.package_config is not None:
            self.package_config = other.package_config

    def as_dict(self) -> dict:
        return _remove_null_entries({
            "apiVersion": self.meta_version,
            "name": self.name,
            "version": self.version,
            "k3sVersion": self.k3s_version,
            "arch": self.arch,
            "manifest": self.manifest.as_dict(),
            "packageConfig": self.package_config.as_dict() if self.package_config else None,
        })

    def to_json(self) -> bytes:
        return json.dumps(self.as_dict(), indent=2).encode()

    @classmethod
    def from_json(cls, data: typing.Union[str, bytes]) -> 'PackageMeta':
        try:
            d = json.loads(data)
        except ValueError as e:
            raise MalformedInputError(f"invalid package metadata: {e}") from e
        if not isinstance(d, dict):
            raise MalformedInputError("invalid package metadata: expected a json object")
        cfg = d.get("packageConfig")
        return cls(
            meta_version=d.get("apiVersion", ""),
            name=d.get("name", ""),
            version=d.get("version", ""),
            k3s_version=d.get("k3sVersion", ""),
            arch=d.get("arch", ""),
            manifest=Manifest.from_dict(d.get("manifest")),
            package_config=PackageConfig.from_yaml(cfg["raw"]) if cfg and cfg.get("raw") else None,
        )


@dataclass
class NodeConnectOptions:
    address: str
    node_type: NodeType = NodeType.REMOTE
    ssh_user: str = "root"
    ssh_password: typing.Optional[str] = None
    ssh_key_file: typing.Optional[str] = None
    ssh_port: int = DEFAULT_SSH_PORT
    # containerized nodes only
    image: typing.Optional[str] = None

    @property
    def host_port(self) -> str:
        return f"{self.address}:{self.ssh_port}"


@dataclass
class ExecuteOptions:
    command: str
    env: typing.Dict[str, str] = field(default_factory=dict)
    log_prefix: str = "exec"
    secrets: typing.List[str] = field(default_factory=list)


@dataclass
class InstallOptions:
    k3s_role: NodeRole = NodeRole.SERVER
    node_token: str = ""
    server_url: str = ""
    k3s_exec_args: typing.List[str] = field(default_factory=list)
    api_listen_port: int = K3S_API_PORT
    init_ha: bool = False
    accept_eula: bool = False
    variables: typing.Dict[str, str] = field(default_factory=dict)

    def to_exec_opts(self, package_config: typing.Optional[PackageConfig] = None) -> ExecuteOptions:
        args = list(self.k3s_exec_args)
        if self.init_ha and "--cluster-init" not in args:
            args.append("--cluster-init")
        if package_config is not None:
            if self.k3s_role == NodeRole.SERVER:
                args = package_config.server_args(args)
            else:
                args = package_config.agent_args(args)

        exec_parts = [self.k3s_role.value]
        env = {"INSTALL_K3S_SKIP_DOWNLOAD": "true"}
        if self.server_url:
            if self.k3s_role == NodeRole.SERVER:
                exec_parts.append(f"--server {self.server_url}")
            else:
                env["K3S_URL"] = self.server_url
        if self.k3s_role == NodeRole.SERVER and self.api_listen_port != K3S_API_PORT:
            exec_parts.append(f"--https-listen-port {self.api_listen_port}")
        exec_parts.extend(args)
        env["INSTALL_K3S_EXEC"] = " ".join(exec_parts)

        secrets = []
        if self.node_token:
            env["K3S_TOKEN"] = self.node_token
            secrets.append(self.node_token)
        return ExecuteOptions(
            command=f"{K3S_SCRIPTS_DIR}/{INSTALL_SCRIPT}",
            env=env,
            log_prefix="K3S",
            secrets=secrets,
        )


@dataclass
class InstalledConfig:
    """What the installer records on the leader so later joins can replicate the install."""
    install_options: InstallOptions = field(default_factory=InstallOptions)

    def to_json(self) -> bytes:
        opts = asdict(self.install_options)
        opts.pop("node_token")
        opts["k3s_role"] = self.install_options.k3s_role.value
        return json.dumps({"install_options": opts}, indent=2).encode()

    @classmethod
    def from_json(cls, data: typing.Union[str, bytes]) -> 'InstalledConfig':
        try:
            d = json.loads(data)
        except ValueError as e:
            raise MalformedInputError(f"invalid installed config: {e}") from e
        return cls(install_options=_from_dict(InstallOptions, d.get("install_options") or {}))


@dataclass
class AddNodeOptions:
    node_connect: NodeConnectOptions
    node_role: NodeRole = NodeRole.AGENT
