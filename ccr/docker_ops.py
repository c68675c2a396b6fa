from __future__ import annotations

import secrets

import docker
from docker.errors import DockerException, NotFound

from . import db
from .config_store import ConfigStore
from .file_sync import remove_replica_files, write_entry_files
from .health import check_health
from .settings import settings
from .workloads import ENVIRONMENT, MOUNTED_FILE, Template, WorkloadRegistry

CONTAINER_CONFIG_ROOT = "/etc/ccr"


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        db.log_event("INFO", f"Created docker network '{settings.docker_network}'.")


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


class DockerSubstrate:
    """Runs replicas as containers on the local docker daemon.

    Environment-mode entries are pinned into the container env at creation;
    mountedFile entries are written on the host and bind-mounted read-only
    under /etc/ccr/<entry>. Containers are labeled so they can be found again.
    """

    def __init__(self, store: ConfigStore, registry: WorkloadRegistry, mount_root: str | None = None):
        self.store = store
        self.registry = registry
        self.mount_root = mount_root or settings.mount_root

    def render_environment(self, workload_name: str, template: Template, config_versions: dict[str, int]) -> dict[str, str]:
        """Template env first, then environment-mode bindings in order; later keys win."""
        env = dict(template.env)
        spec = self.registry.get(workload_name)
        for name in spec.binding_names(ENVIRONMENT):
            entry = self.store.get(name, config_versions[name])
            env.update(entry.data)
        return env

    def create_replica(self, workload_name: str, template: Template, config_versions: dict[str, int]) -> str:
        if not docker_available():
            raise RuntimeError("Docker is not available. Start Docker Desktop / docker daemon and try again.")
        ensure_network()

        name = f"ccr-{workload_name}-{secrets.token_hex(3)}"
        env = self.render_environment(workload_name, template, config_versions)

        volumes: dict[str, dict[str, str]] = {}
        spec = self.registry.get(workload_name)
        for entry_name in spec.binding_names(MOUNTED_FILE):
            entry = self.store.get(entry_name, config_versions[entry_name])
            host_dir = write_entry_files(self.mount_root, name, entry)
            volumes[host_dir] = {"bind": f"{CONTAINER_CONFIG_ROOT}/{entry_name}", "mode": "ro"}
        if volumes:
            env.setdefault("CCR_CONFIG_DIR", CONTAINER_CONFIG_ROOT)

        labels = {
            "ccr.workload": workload_name,
            "ccr.config-versions": ",".join(f"{k}={v}" for k, v in sorted(config_versions.items())),
        }
        c = _client()
        c.containers.run(
            template.image,
            command=template.command,
            detach=True,
            name=name,
            environment=env,
            network=settings.docker_network,
            labels=labels,
            volumes=volumes or None,
            # The reconciler replaces failed replicas itself.
            restart_policy={"Name": "no"},
        )
        db.log_event("INFO", f"Started container {name} from image {template.image}", workload=workload_name)
        return name

    def is_ready(self, replica_id: str) -> bool:
        replica = db.get_replica(replica_id)
        if replica is None:
            return False
        c = _client()
        try:
            cont = c.containers.get(replica_id)
            cont.reload()
        except NotFound:
            return False
        if cont.status != "running":
            return False
        template = self.registry.get(replica.workload).template
        url = f"{container_http_base(replica_id, template.internal_port)}{template.health_path}"
        ok, _, _ = check_health(url, timeout_s=settings.health_timeout_s)
        return ok

    def terminate_replica(self, replica_id: str) -> None:
        try:
            _client().containers.get(replica_id).remove(force=True)
        except NotFound:
            pass
        finally:
            remove_replica_files(self.mount_root, replica_id)
