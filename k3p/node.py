import io
import logging
import os
import posixpath
import shlex
import shutil
import subprocess
import tarfile
import tempfile
import threading
import typing
from abc import abstractmethod
from contextlib import AbstractContextManager

import docker
import docker.errors
import docker.models.containers as dockercontainer
import paramiko

from k3p import K3S_BIN_DIR
from k3p import K3S_IMAGES_DIR
from k3p import K3S_MANIFESTS_DIR
from k3p import K3S_SCRIPTS_DIR
from k3p import K3S_SERVER_PROCESS
from k3p import K3S_STATIC_DIR
from k3p import ROOT_LOGGER_NAME
from k3p import netutil
from k3p.archive import Package
from k3p.errors import DiscoveryExhaustedError
from k3p.errors import ExecutionError
from k3p.errors import ProcessNotFoundError
from k3p.errors import TransportError
from k3p.log import log_line
from k3p.log import redact_secrets
from k3p.log import tail_reader
from k3p.models import Artifact
from k3p.models import ArtifactType
from k3p.models import ExecuteOptions
from k3p.models import NodeConnectOptions
from k3p.models import NodeType

logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.node")

DEFAULT_DOCKER_IMAGE = "busybox:latest"

# spool anything larger than this to disk when a stream has to be sized up front
_SPOOL_MAX = 16 * 1024 * 1024


def build_command(opts: ExecuteOptions, sudo: bool = True) -> str:
    """Render `K="v" ... [sudo -E] <command>`."""
    cmd = f"sudo -E {opts.command}" if sudo else opts.command
    env = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(opts.env.items()))
    return f"{env} {cmd}" if env else cmd


def _spool(rdr: typing.BinaryIO) -> typing.Tuple[typing.BinaryIO, int]:
    f = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX)
    shutil.copyfileobj(rdr, f)
    size = f.tell()
    f.seek(0)
    return f, size


def _drain(prefix: str, streams: typing.Sequence[typing.IO], secrets: typing.Sequence[str]) -> \
        typing.List[threading.Thread]:
    threads = []
    for stream in streams:
        t = threading.Thread(target=tail_reader, args=(prefix, stream, secrets), daemon=True)
        t.start()
        threads.append(t)
    return threads


class Node(AbstractContextManager):
    """
    A handle to a target machine that can receive files and run commands. A node owns its underlying
    connection and must be closed once it is no longer needed.
    """
    node_type: NodeType

    @abstractmethod
    def mkdir_all(self, path: str) -> None:
        """Ensure the directory exists on the target."""
        pass

    @abstractmethod
    def get_file(self, path: str) -> typing.BinaryIO:
        """Open a readable stream for a path on the target. The caller closes it."""
        pass

    @abstractmethod
    def write_file(self, rdr: typing.BinaryIO, dest: str, mode: str, size: int) -> None:
        """
        Stream rdr to dest, creating parent directories first, then apply mode (an octal string like "0755").
        rdr is closed on every path.
        """
        pass

    @abstractmethod
    def execute(self, opts: ExecuteOptions) -> None:
        """
        Run a command to completion, logging stdout and stderr lines under opts.log_prefix. Returns only
        once the process exited and both streams are drained. Raises ExecutionError on a non-zero exit.
        """
        pass

    @abstractmethod
    def get_k3s_address(self) -> str:
        """The externally reachable address of the k3s server running on this node."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class LocalNode(Node):
    node_type = NodeType.LOCAL

    def __init__(self, proc_root: str = "/proc"):
        self._proc_root = proc_root

    def mkdir_all(self, path: str) -> None:
        os.makedirs(path, mode=0o755, exist_ok=True)

    def get_file(self, path: str) -> typing.BinaryIO:
        return open(path, "rb")

    def write_file(self, rdr: typing.BinaryIO, dest: str, mode: str, size: int) -> None:
        try:
            self.mkdir_all(posixpath.dirname(dest) or ".")
            logger.debug(f"writing {dest} (mode {mode}, {size} bytes)")
            with open(dest, "wb") as f:
                shutil.copyfileobj(rdr, f)
            os.chmod(dest, int(mode, 8))
        finally:
            rdr.close()

    def execute(self, opts: ExecuteOptions) -> None:
        cmd = build_command(opts, sudo=False)
        logger.debug(f"exec local: '{redact_secrets(cmd, opts.secrets)}'")
        env = dict(os.environ)
        env.update(opts.env)
        try:
            proc = subprocess.Popen(["/bin/sh", "-c", opts.command], env=env,
                                    stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise ExecutionError(f"failed to start '{redact_secrets(cmd, opts.secrets)}': {e}") from e
        threads = _drain(opts.log_prefix, [proc.stdout, proc.stderr], opts.secrets)
        status = proc.wait()
        for t in threads:
            t.join()
        proc.stdout.close()
        proc.stderr.close()
        if status != 0:
            raise ExecutionError(
                f"non-zero return code ({status}) from '{redact_secrets(cmd, opts.secrets)}'", status)

    def get_k3s_address(self) -> str:
        return netutil.get_k3s_address(self._proc_root)

    def close(self) -> None:
        pass


class RemoteNode(Node):
    """A node reached over SSH. Privileged operations go through sudo, file writes through scp."""
    node_type = NodeType.REMOTE

    def __init__(self, opts: NodeConnectOptions, client: paramiko.SSHClient):
        self._opts = opts
        self._client = client
        self._closed = False

    @classmethod
    def connect(cls, opts: NodeConnectOptions) -> 'RemoteNode':
        if not opts.ssh_password and not opts.ssh_key_file:
            raise TransportError("must supply an ssh password or a private key file")
        client = paramiko.client.SSHClient()
        # host keys of freshly provisioned nodes are not known ahead of time
        client.set_missing_host_key_policy(paramiko.client.MissingHostKeyPolicy)
        user, host, port = opts.ssh_user, opts.address, opts.ssh_port
        try:
            if opts.ssh_password:
                logger.debug(f"connecting to {user}@{host}:{port} with password authentication")
                client.connect(hostname=host, port=port, allow_agent=False, look_for_keys=False,
                               username=user, password=opts.ssh_password, timeout=30.0)
            else:
                logger.debug(f"connecting to {user}@{host}:{port} with key file authentication")
                client.connect(hostname=host, port=port, username=user, key_filename=opts.ssh_key_file,
                               timeout=30.0)
            logger.debug(f"connected to {user}@{host}:{port}")
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"failed to connect {user}@{host}:{port}: {e}")
            client.close()
            raise TransportError(f"failed to connect {user}@{host}:{port}: {e}") from e
        return cls(opts, client)

    def _exec_command(self, cmd: str):
        try:
            return self._client.exec_command(cmd)
        except paramiko.SSHException as e:
            raise TransportError(f"{self._opts.host_port}: {e}") from e

    def _run(self, cmd: str) -> typing.Tuple[int, bytes, str]:
        _, stdout, stderr = self._exec_command(cmd)
        # read() must be called before receiving exit code or else can hang indefinitely!
        so, se = stdout.read(), stderr.read().decode().strip()
        return stdout.channel.recv_exit_status(), so, se

    def _must_run(self, cmd: str) -> bytes:
        status, so, se = self._run(cmd)
        if status != 0:
            raise ExecutionError(f"non-zero return code ({status}) from '{cmd}' on {self._opts.address}: {se}",
                                 status)
        return so

    def mkdir_all(self, path: str) -> None:
        self._must_run(f"sudo mkdir -p {shlex.quote(path)}")

    def get_file(self, path: str) -> typing.BinaryIO:
        _, stdout, stderr = self._exec_command(f"sudo cat {shlex.quote(path)}")
        out = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX)
        shutil.copyfileobj(stdout, out)
        se = stderr.read().decode().strip()
        status = stdout.channel.recv_exit_status()
        if status != 0:
            out.close()
            if "No such file or directory" in se:
                raise FileNotFoundError(f"{path} not found on {self._opts.address}")
            raise ExecutionError(f"failed to read {self._opts.address}:{path}: {se}", status)
        out.seek(0)
        return out

    def write_file(self, rdr: typing.BinaryIO, dest: str, mode: str, size: int) -> None:
        try:
            self.mkdir_all(posixpath.dirname(dest))
            if size is None or size < 0:
                spooled, size = _spool(rdr)
                rdr.close()
                rdr = spooled
            logger.debug(f"scp {dest} to {self._opts.address} (mode {mode}, {size} bytes)")
            self._scp_send(rdr, dest, mode, size)
        finally:
            rdr.close()

    def _scp_send(self, rdr: typing.BinaryIO, dest: str, mode: str, size: int):
        """Speak the sink side of the scp protocol to `sudo scp -t` on the target."""
        try:
            chan = self._client.get_transport().open_session()
        except (paramiko.SSHException, AttributeError) as e:
            raise TransportError(f"{self._opts.host_port}: could not open session: {e}") from e
        try:
            chan.exec_command(f"sudo scp -t {shlex.quote(dest)}")
            self._scp_ack(chan, dest)
            chan.sendall(f"C{mode} {size} {posixpath.basename(dest)}\n".encode())
            self._scp_ack(chan, dest)
            remaining = size
            while remaining > 0:
                chunk = rdr.read(min(32768, remaining))
                if not chunk:
                    raise TransportError(f"short read sending {dest}: {remaining} of {size} bytes missing")
                chan.sendall(chunk)
                remaining -= len(chunk)
            chan.sendall(b"\x00")
            self._scp_ack(chan, dest)
            chan.shutdown_write()
            status = chan.recv_exit_status()
            if status != 0:
                raise ExecutionError(f"scp to {self._opts.address}:{dest} exited with {status}", status)
        finally:
            chan.close()

    def _scp_ack(self, chan: paramiko.Channel, dest: str):
        code = chan.recv(1)
        if code == b"\x00":
            return
        if not code:
            raise TransportError(f"scp to {self._opts.address}:{dest}: connection closed")
        msg = b""
        while not msg.endswith(b"\n"):
            c = chan.recv(1)
            if not c:
                break
            msg += c
        raise ExecutionError(f"scp to {self._opts.address}:{dest} failed: {msg.decode().strip()}")

    def execute(self, opts: ExecuteOptions) -> None:
        cmd = build_command(opts)
        shown = redact_secrets(cmd, opts.secrets)
        logger.debug(f"exec {self._opts.address}: '{shown}'")
        _, stdout, stderr = self._exec_command(cmd)
        threads = _drain(opts.log_prefix, [stdout, stderr], opts.secrets)
        status = stdout.channel.recv_exit_status()
        for t in threads:
            t.join()
        if status != 0:
            raise ExecutionError(f"non-zero return code ({status}) from '{shown}' on {self._opts.address}",
                                 status)

    def get_k3s_address(self) -> str:
        status, so, se = self._run(f"pgrep -x {K3S_SERVER_PROCESS}")
        pids = so.decode().split()
        if status != 0 or not pids:
            raise ProcessNotFoundError(f"no running process found for {K3S_SERVER_PROCESS!r} on {self._opts.address}")
        for pid in pids:
            with self.get_file(f"/proc/{pid}/net/tcp") as f:
                addr = netutil.scan_socket_table(f.read().decode().splitlines())
            if addr:
                return addr
        raise DiscoveryExhaustedError(f"could not determine the k3s address of {self._opts.address}")

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._client.close()


class DockerNode(Node):
    """A node backed by a docker container."""
    node_type = NodeType.DOCKER

    def __init__(self, container: dockercontainer.Container, client: docker.DockerClient):
        self._container = container
        self._client = client
        self._closed = False

    @classmethod
    def connect(cls, opts: NodeConnectOptions) -> 'DockerNode':
        """Attach to the container named opts.address, creating and starting it from opts.image if missing."""
        try:
            client = docker.DockerClient()
        except docker.errors.DockerException as e:
            raise TransportError(f"failed to connect to docker: {e}") from e
        try:
            try:
                container = client.containers.get(opts.address)
            except docker.errors.NotFound:
                image = opts.image or DEFAULT_DOCKER_IMAGE
                logger.info(f"creating container {opts.address} from {image}")
                container = client.containers.run(
                    image, name=opts.address, detach=True, privileged=True,
                    entrypoint=["/bin/sh"], command=["-c", "while true; do sleep 3600; done"],
                )
            if container.status != "running":
                container.start()
        except docker.errors.DockerException as e:
            client.close()
            raise TransportError(f"failed to open container {opts.address}: {e}") from e
        return cls(container, client)

    @property
    def name(self) -> str:
        return self._container.name

    def mkdir_all(self, path: str) -> None:
        status, out = self._container.exec_run(["mkdir", "-p", path], demux=True)
        if status != 0:
            raise ExecutionError(f"failed to mkdir {path} in {self.name}: {out}", status)

    def get_file(self, path: str) -> typing.BinaryIO:
        try:
            bits, stat = self._container.get_archive(path)
        except docker.errors.NotFound as e:
            raise FileNotFoundError(f"{path} not found in container {self.name}") from e
        logger.debug(f"docker get_archive {path}: {stat}")
        with tarfile.open(fileobj=io.BytesIO(b"".join(bits))) as tar:
            for member in tar:
                if member.issym():
                    return self.get_file(posixpath.join(posixpath.dirname(path), member.linkname))
                if member.isreg():
                    return io.BytesIO(tar.extractfile(member).read())
        raise FileNotFoundError(f"{path} is not a regular file in container {self.name}")

    def write_file(self, rdr: typing.BinaryIO, dest: str, mode: str, size: int) -> None:
        try:
            spooled, actual = _spool(rdr)
            with spooled:
                buf = io.BytesIO()
                with tarfile.open(fileobj=buf, mode="w") as tar:
                    info = tarfile.TarInfo(posixpath.basename(dest))
                    info.size = actual
                    info.mode = int(mode, 8)
                    tar.addfile(info, spooled)
            parent = posixpath.dirname(dest)
            self.mkdir_all(parent)
            logger.debug(f"copying {dest} into {self.name} (mode {mode}, {actual} bytes)")
            if not self._container.put_archive(parent, buf.getvalue()):
                raise TransportError(f"failed to copy {dest} to container {self.name}")
        finally:
            rdr.close()

    def execute(self, opts: ExecuteOptions) -> None:
        shown = redact_secrets(build_command(opts, sudo=False), opts.secrets)
        logger.debug(f"exec {self.name}: '{shown}'")
        api = self._client.api
        try:
            exec_id = api.exec_create(self._container.id, ["/bin/sh", "-c", opts.command],
                                      environment=opts.env, privileged=True)["Id"]
            pending = [b"", b""]
            for chunks in api.exec_start(exec_id, stream=True, demux=True):
                for i, chunk in enumerate(chunks):
                    if not chunk:
                        continue
                    *lines, pending[i] = (pending[i] + chunk).split(b"\n")
                    for line in lines:
                        log_line(opts.log_prefix, line, opts.secrets)
            for rest in pending:
                log_line(opts.log_prefix, rest, opts.secrets)
            status = api.exec_inspect(exec_id)["ExitCode"]
        except docker.errors.DockerException as e:
            raise TransportError(f"failed to exec in {self.name}: {e}") from e
        if status != 0:
            raise ExecutionError(f"non-zero return code ({status}) from '{shown}' in {self.name}", status)

    def get_k3s_address(self) -> str:
        self._container.reload()
        networks = self._container.attrs.get("NetworkSettings", {}).get("Networks", {})
        for name, network in networks.items():
            addr = network.get("IPAddress")
            if addr:
                logger.debug(f"docker container {self.name} ip address on {name}: {addr}")
                return addr
        raise DiscoveryExhaustedError(f"container {self.name} has no network address")

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._client.close()


def connect(opts: NodeConnectOptions) -> Node:
    if opts.node_type == NodeType.LOCAL:
        return LocalNode()
    if opts.node_type == NodeType.REMOTE:
        return RemoteNode.connect(opts)
    if opts.node_type == NodeType.DOCKER:
        return DockerNode.connect(opts)
    raise ValueError(f"unknown node type {opts.node_type!r}")


# category -> (target directory, mode); the order is the order artifacts land on a node
SYNC_PLAN = [
    (ArtifactType.BIN, K3S_BIN_DIR, "0755"),
    (ArtifactType.SCRIPT, K3S_SCRIPTS_DIR, "0755"),
    (ArtifactType.IMAGES, K3S_IMAGES_DIR, "0644"),
    (ArtifactType.MANIFEST, K3S_MANIFESTS_DIR, "0644"),
    (ArtifactType.STATIC, K3S_STATIC_DIR, "0644"),
]


def sync_package_to_node(target: Node, pkg: Package, variables: typing.Optional[typing.Mapping[str, str]] = None):
    """
    Write every artifact of pkg to its place on target: all binaries, then scripts, images, manifests and
    static assets. Manifests are templated with variables when given.
    """
    manifest = pkg.get_meta().manifest
    for t, dest_dir, mode in SYNC_PLAN:
        for name in manifest.names(t):
            artifact = pkg.get(Artifact(type=t, name=name))
            if t == ArtifactType.MANIFEST and variables:
                artifact.apply_variables(variables)
            dest = posixpath.join(dest_dir, artifact.name)
            logger.info(f"copying {t.value} {artifact.name} to {dest}")
            target.write_file(artifact.body, dest, mode, artifact.size)
