from __future__ import annotations

import base64
from types import SimpleNamespace
from typing import Any

import pytest
from cryptography.fernet import Fernet
from kubernetes.client import ApiException

from config_controller.src.envcontent import encrypt_value
from config_controller.src.errors import (
    ClusterReadError,
    ClusterWriteError,
    DecryptionFailed,
    MissingDecryptionKey,
    MissingSourceKey,
)
from config_controller.src.materializer import SecretMaterializer, encode_secret_data

PREFIX = "config.s24.dev"


class FakeCoreApi:
    def __init__(
        self,
        secrets: dict[tuple[str, str], Any] | None = None,
        failures: dict[str, Exception] | None = None,
    ) -> None:
        self.secrets = dict(secrets or {})
        self.failures = dict(failures or {})
        self.reads: list[tuple[str, str]] = []
        self.created: list[tuple[str, Any]] = []
        self.replaced: list[tuple[str, str, Any]] = []

    def read_namespaced_secret(self, name: str, namespace: str) -> Any:
        self.reads.append((namespace, name))
        if "read" in self.failures:
            raise self.failures["read"]
        try:
            return self.secrets[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def create_namespaced_secret(self, namespace: str, body: Any) -> Any:
        if "create" in self.failures:
            raise self.failures["create"]
        self.created.append((namespace, body))
        return body

    def replace_namespaced_secret(self, name: str, namespace: str, body: Any) -> Any:
        if "replace" in self.failures:
            raise self.failures["replace"]
        self.replaced.append((namespace, name, body))
        return body


class RecordingParser:
    def __init__(self, result: dict[str, str] | None = None, error: Exception | None = None) -> None:
        self.result = result if result is not None else {"KEY": "value"}
        self.error = error
        self.calls: list[tuple[str, str | None]] = []

    def __call__(self, content: str, decryption_key: str | None) -> dict[str, str]:
        self.calls.append((content, decryption_key))
        if self.error is not None:
            raise self.error
        return dict(self.result)


def make_config_map(
    name: str = "my-config",
    namespace: str = "default",
    target_secret: str = "my-secret",
    resource_version: str = "12345",
    data: dict[str, str] | None = None,
    extra_labels: dict[str, str] | None = None,
) -> SimpleNamespace:
    labels = {f"{PREFIX}/target-secret": target_secret, **(extra_labels or {})}
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name, namespace=namespace, labels=labels, resource_version=resource_version
        ),
        data=data if data is not None else {".env": "KEY=value"},
    )


def make_key_secret(name: str, values: dict[str, str], namespace: str = "default") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels={}),
        data=encode_secret_data(values),
    )


def b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def test_creates_secret_from_plain_config_map() -> None:
    core_api = FakeCoreApi()
    materializer = SecretMaterializer(core_api)

    secret = materializer.materialize(make_config_map())

    assert len(core_api.created) == 1
    namespace, body = core_api.created[0]
    assert namespace == "default"
    assert secret is body
    assert body.metadata.name == "my-secret"
    assert body.metadata.namespace == "default"
    assert body.metadata.labels == {
        f"{PREFIX}/source-configmap": "my-config",
        f"{PREFIX}/source-configmap-version": "12345",
    }
    assert body.type == "Opaque"
    assert body.data == {"KEY": b64("value")}


def test_replaces_existing_secret_in_place() -> None:
    core_api = FakeCoreApi()
    materializer = SecretMaterializer(core_api)
    existing = SimpleNamespace(
        metadata=SimpleNamespace(
            name="my-secret",
            namespace="default",
            labels={f"{PREFIX}/source-configmap-version": "12345"},
        )
    )

    materializer.materialize(make_config_map(resource_version="67890"), existing_secret=existing)

    assert core_api.created == []
    namespace, name, body = core_api.replaced[0]
    assert (namespace, name) == ("default", "my-secret")
    assert body.metadata.labels[f"{PREFIX}/source-configmap-version"] == "67890"


def test_missing_source_key_fails_without_write() -> None:
    core_api = FakeCoreApi()
    parser = RecordingParser()
    materializer = SecretMaterializer(core_api, parse_env=parser)

    with pytest.raises(MissingSourceKey, match=r"\.env"):
        materializer.materialize(make_config_map(data={"other": "A=1"}))

    assert parser.calls == []
    assert core_api.created == []
    assert core_api.replaced == []


def test_uses_custom_source_key_from_label() -> None:
    parser = RecordingParser(result={"CUSTOM_KEY": "custom_value"})
    core_api = FakeCoreApi()
    materializer = SecretMaterializer(core_api, parse_env=parser)
    config_map = make_config_map(
        data={"custom.env": "CUSTOM_KEY=custom_value"},
        extra_labels={f"{PREFIX}/source-key": "custom.env"},
    )

    materializer.materialize(config_map)

    assert parser.calls == [("CUSTOM_KEY=custom_value", None)]
    assert core_api.created[0][1].data == {"CUSTOM_KEY": b64("custom_value")}


def test_no_decryption_label_passes_no_key() -> None:
    parser = RecordingParser()
    core_api = FakeCoreApi()

    SecretMaterializer(core_api, parse_env=parser).materialize(make_config_map())

    assert parser.calls == [("KEY=value", None)]
    assert core_api.reads == []


def test_resolves_default_decryption_key_entry() -> None:
    parser = RecordingParser()
    core_api = FakeCoreApi(
        secrets={("default", "keys"): make_key_secret("keys", {"CONFIG_DECRYPTION_KEY": "k1"})}
    )
    config_map = make_config_map(extra_labels={f"{PREFIX}/decryption-secret": "keys"})

    SecretMaterializer(core_api, parse_env=parser).materialize(config_map)

    assert core_api.reads == [("default", "keys")]
    assert parser.calls == [("KEY=value", "k1")]


def test_resolves_label_overridden_decryption_key_entry() -> None:
    parser = RecordingParser()
    core_api = FakeCoreApi(
        secrets={
            ("default", "keys"): make_key_secret(
                "keys", {"CONFIG_DECRYPTION_KEY": "wrong", "APP_KEY": "right"}
            )
        }
    )
    config_map = make_config_map(
        extra_labels={
            f"{PREFIX}/decryption-secret": "keys",
            f"{PREFIX}/decryption-secret-key": "APP_KEY",
        }
    )

    SecretMaterializer(core_api, parse_env=parser).materialize(config_map)

    assert parser.calls == [("KEY=value", "right")]


def test_decryption_secret_is_read_from_config_map_namespace() -> None:
    core_api = FakeCoreApi(
        secrets={("team-a", "keys"): make_key_secret("keys", {"CONFIG_DECRYPTION_KEY": "k"}, "team-a")}
    )
    config_map = make_config_map(
        namespace="team-a", extra_labels={f"{PREFIX}/decryption-secret": "keys"}
    )

    SecretMaterializer(core_api, parse_env=RecordingParser()).materialize(config_map)

    assert core_api.reads == [("team-a", "keys")]
    assert core_api.created[0][0] == "team-a"


def test_missing_decryption_key_entry_fails_without_write() -> None:
    core_api = FakeCoreApi(secrets={("default", "keys"): make_key_secret("keys", {"OTHER": "x"})})
    parser = RecordingParser()
    config_map = make_config_map(extra_labels={f"{PREFIX}/decryption-secret": "keys"})

    with pytest.raises(MissingDecryptionKey, match="CONFIG_DECRYPTION_KEY"):
        SecretMaterializer(core_api, parse_env=parser).materialize(config_map)

    assert parser.calls == []
    assert core_api.created == []


def test_unreadable_decryption_secret_raises_read_error() -> None:
    core_api = FakeCoreApi(failures={"read": ApiException(status=403, reason="Forbidden")})
    config_map = make_config_map(extra_labels={f"{PREFIX}/decryption-secret": "keys"})

    with pytest.raises(ClusterReadError) as exc_info:
        SecretMaterializer(core_api).materialize(config_map)

    assert exc_info.value.status == 403
    assert core_api.created == []


def test_parser_failure_becomes_decryption_failed() -> None:
    core_api = FakeCoreApi()
    parser = RecordingParser(error=ValueError("bad content"))

    with pytest.raises(DecryptionFailed, match="bad content"):
        SecretMaterializer(core_api, parse_env=parser).materialize(make_config_map())

    assert core_api.created == []


def test_decrypts_end_to_end_with_referenced_key() -> None:
    key = Fernet.generate_key().decode()
    core_api = FakeCoreApi(
        secrets={("default", "keys"): make_key_secret("keys", {"CONFIG_DECRYPTION_KEY": key})}
    )
    config_map = make_config_map(
        data={".env": f"DB_PASSWORD={encrypt_value('hunter2', key)}\nDB_USER=app\n"},
        extra_labels={f"{PREFIX}/decryption-secret": "keys"},
    )

    secret = SecretMaterializer(core_api).materialize(config_map)

    assert secret.data == {"DB_PASSWORD": b64("hunter2"), "DB_USER": b64("app")}


def test_create_failure_raises_cluster_write_error() -> None:
    core_api = FakeCoreApi(failures={"create": ApiException(status=409, reason="Conflict")})

    with pytest.raises(ClusterWriteError) as exc_info:
        SecretMaterializer(core_api).materialize(make_config_map())

    assert exc_info.value.action == "create"
    assert exc_info.value.status == 409
