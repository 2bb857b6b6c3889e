from __future__ import annotations


class SecretSyncError(Exception):
    """Base class for every error raised by the reconciliation engine."""


class WatchTransportError(SecretSyncError):
    """A watch stream lost its connection or was rejected by the API server."""

    def __init__(self, kind: str, message: str, status: int | None = None) -> None:
        super().__init__(f"{kind} watch failed: {message}")
        self.kind = kind
        self.status = status


class MaterializationError(SecretSyncError):
    """Building the Secret body for one ConfigMap failed; the entry is retried later."""


class MissingSourceKey(MaterializationError):
    def __init__(self, config_map_name: str, source_key: str) -> None:
        super().__init__(f"Key {source_key} not found in ConfigMap {config_map_name}")
        self.config_map_name = config_map_name
        self.source_key = source_key


class MissingDecryptionKey(MaterializationError):
    def __init__(self, secret_name: str, secret_key: str) -> None:
        super().__init__(f"Key {secret_key} not found in secret {secret_name}")
        self.secret_name = secret_name
        self.secret_key = secret_key


class DecryptionFailed(MaterializationError):
    """The env content was malformed or could not be decrypted with the given key."""


class ClusterError(SecretSyncError):
    """A Kubernetes API call issued by the engine failed."""

    def __init__(self, action: str, namespace: str, name: str, status: int | None = None) -> None:
        detail = f" (status={status})" if status is not None else ""
        super().__init__(f"Failed to {action} secret {namespace}/{name}{detail}")
        self.action = action
        self.namespace = namespace
        self.name = name
        self.status = status


class ClusterReadError(ClusterError):
    pass


class ClusterWriteError(ClusterError):
    pass
