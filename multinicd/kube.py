"""Minimal Kubernetes API access for custom resources."""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

import requests
import yaml

log = logging.getLogger(__name__)

API_VERSION = "multinic.fms.io/v1"
APISERVER_TIMEOUT = 120.0  # seconds

JSON_PATCH_TYPE = "application/json-patch+json"
MERGE_PATCH_TYPE = "application/merge-patch+json"
STRATEGIC_MERGE_PATCH_TYPE = "application/strategic-merge-patch+json"

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")


class KubeError(Exception):
    """Raised when the API server cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class KubeConfig:
    """Connection settings for an API server."""

    server: str
    token: Optional[str] = None
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    insecure: bool = False

    @property
    def verify(self) -> Any:
        if self.insecure:
            return False
        return self.ca_file or True


class GroupVersionResource(NamedTuple):
    group: str
    version: str
    resource: str


def parse_resource_arg(resource: str) -> GroupVersionResource:
    """Split ``resource.version.group`` into its parts."""
    parts = resource.split(".", 2)
    if len(parts) < 3:
        raise ValueError(f"not a fully qualified resource: {resource!r}")
    name, version, group = parts
    return GroupVersionResource(group=group, version=version, resource=name)


def label_selector(labels: Mapping[str, str]) -> str:
    """Render an equality label selector with keys in sorted order."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def _data_file(data: str, suffix: str) -> str:
    handle = tempfile.NamedTemporaryFile(prefix="kube-", suffix=suffix, delete=False)
    with handle:
        handle.write(base64.b64decode(data))
    return handle.name


def _resolve(base: Path, value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    path = Path(value)
    return str(path if path.is_absolute() else base / path)


def load_kubeconfig(path: str) -> KubeConfig:
    """Read the current context of a kubeconfig file."""
    try:
        with open(path, encoding="utf-8") as fh:
            doc = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise KubeError(f"cannot read kubeconfig {path}: {exc}") from exc
    base = Path(path).resolve().parent

    def named(section: str, name: Optional[str]) -> Dict[str, Any]:
        entries = doc.get(section) or []
        for entry in entries:
            if name is None or entry.get("name") == name:
                return entry
        raise KubeError(f"{section} entry {name!r} not found in {path}")

    context_name = doc.get("current-context") or None
    context = named("contexts", context_name).get("context") or {}
    cluster = named("clusters", context.get("cluster")).get("cluster") or {}
    users = doc.get("users") or []
    user: Dict[str, Any] = {}
    if users:
        user = named("users", context.get("user")).get("user") or {}

    server = cluster.get("server")
    if not server:
        raise KubeError(f"no server in kubeconfig {path}")

    ca_file = _resolve(base, cluster.get("certificate-authority"))
    if cluster.get("certificate-authority-data"):
        ca_file = _data_file(cluster["certificate-authority-data"], ".crt")

    cert_file = _resolve(base, user.get("client-certificate"))
    if user.get("client-certificate-data"):
        cert_file = _data_file(user["client-certificate-data"], ".crt")
    key_file = _resolve(base, user.get("client-key"))
    if user.get("client-key-data"):
        key_file = _data_file(user["client-key-data"], ".key")

    token = user.get("token")
    token_file = _resolve(base, user.get("tokenFile") or user.get("token-file"))
    if not token and token_file:
        token = Path(token_file).read_text(encoding="utf-8").strip()

    return KubeConfig(
        server=server.rstrip("/"),
        token=token,
        ca_file=ca_file,
        cert_file=cert_file,
        key_file=key_file,
        insecure=bool(cluster.get("insecure-skip-tls-verify", False)),
    )


def in_cluster_config() -> KubeConfig:
    """Build a configuration from the pod's service account."""
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT")
    if not host or not port:
        raise KubeError("unable to load in-cluster configuration: service host and port not set")
    try:
        token = (SERVICE_ACCOUNT_DIR / "token").read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise KubeError(f"cannot read service account token: {exc}") from exc
    ca_path = SERVICE_ACCOUNT_DIR / "ca.crt"
    if ":" in host:
        host = f"[{host}]"
    return KubeConfig(
        server=f"https://{host}:{port}",
        token=token,
        ca_file=str(ca_path) if ca_path.exists() else None,
    )


def load_config(path: Optional[str]) -> KubeConfig:
    """Use ``path`` as a kubeconfig when given, the in-cluster settings otherwise."""
    if path:
        return load_kubeconfig(path)
    return in_cluster_config()


class KubeClient:
    """Thin JSON client for the API server."""

    def __init__(self, config: KubeConfig, timeout: float = APISERVER_TIMEOUT) -> None:
        self.config = config
        self.timeout = timeout
        self.session = requests.Session()
        self.session.verify = config.verify
        if config.token:
            self.session.headers["Authorization"] = f"Bearer {config.token}"
        if config.cert_file and config.key_file:
            self.session.cert = (config.cert_file, config.key_file)
        elif config.cert_file:
            self.session.cert = config.cert_file

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, str]] = None,
        body: Any = None,
        content_type: Optional[str] = None,
    ) -> Any:
        """Send a request and return the decoded JSON answer."""
        headers = {"Accept": "application/json"}
        data: Optional[bytes] = None
        if body is not None:
            if isinstance(body, (bytes, bytearray)):
                data = bytes(body)
            elif isinstance(body, str):
                data = body.encode("utf-8")
            else:
                data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = content_type or "application/json"
        url = self.config.server.rstrip("/") + path
        try:
            resp = self.session.request(
                method, url, params=params, data=data, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise KubeError(f"{method} {path}: {exc}") from exc
        if resp.status_code >= 400:
            raise KubeError(
                f"{method} {path}: {resp.status_code} {resp.text.strip()}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise KubeError(f"{method} {path}: invalid JSON answer") from exc

    def get_pod(self, name: str, namespace: str) -> Dict[str, Any]:
        """Fetch a pod object."""
        return self.request("GET", f"/api/v1/namespaces/{namespace}/pods/{name}")


class DynamicHandler:
    """Generic access to one kind of resource."""

    def __init__(self, client: KubeClient, resource_name: str, kind: str) -> None:
        self.client = client
        self.resource_name = resource_name
        self.kind = kind
        self.gvr = parse_resource_arg(resource_name)

    def _path(self, namespace: str, name: Optional[str] = None) -> str:
        gvr = self.gvr
        path = f"/apis/{gvr.group}/{gvr.version}" if gvr.group else f"/api/{gvr.version}"
        if namespace:
            path += f"/namespaces/{namespace}"
        path += f"/{gvr.resource}"
        if name:
            path += f"/{name}"
        return path

    def _timed(self, action: str, method: str, path: str, **kwargs: Any) -> Any:
        start = time.monotonic()
        try:
            return self.client.request(method, path, **kwargs)
        finally:
            elapsed = int((time.monotonic() - start) * 1_000_000)
            log.info("%s%s elapsed: %d us", action, self.kind, elapsed)

    def basic_object(self, name: str) -> Dict[str, Any]:
        """Skeleton object of this kind with only a name."""
        return {"apiVersion": API_VERSION, "kind": self.kind, "metadata": {"name": name}}

    def get_name(self, obj: Mapping[str, Any]) -> str:
        return obj["metadata"]["name"]

    def create(self, obj: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        log.info("Create %s/%s", self.resource_name, self.get_name(obj))
        return self._timed("Create", "POST", self._path(namespace), body=obj)

    def update(self, obj: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        name = self.get_name(obj)
        log.info("Update %s/%s", self.resource_name, name)
        return self._timed("Update", "PUT", self._path(namespace, name), body=obj)

    def list(self, namespace: str, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"labelSelector": label_selector} if label_selector else None
        result = self._timed("List", "GET", self._path(namespace), params=params)
        return list((result or {}).get("items") or [])

    def get(self, name: str, namespace: str) -> Dict[str, Any]:
        return self._timed("Get", "GET", self._path(namespace, name))

    def delete(self, name: str, namespace: str) -> None:
        log.info("Delete %s/%s", self.resource_name, name)
        self._timed("Delete", "DELETE", self._path(namespace, name))

    def patch(self, name: str, namespace: str, patch_type: str, data: Any) -> Dict[str, Any]:
        shown = data if isinstance(data, (str, bytes)) else json.dumps(data)
        log.info("Patch %s/%s - %s", self.resource_name, name, shown)
        return self._timed(
            "Patch", "PATCH", self._path(namespace, name), body=data, content_type=patch_type
        )