from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from typing import Any

from kubernetes.client import CoreV1Api, V1ObjectMeta, V1Secret

from config_controller.src.envcontent import parse_env_content
from config_controller.src.errors import DecryptionFailed, MissingDecryptionKey, MissingSourceKey
from config_controller.src.kube import create_secret, read_secret, replace_secret
from config_controller.src.labels import (
    DEFAULT_DECRYPTION_SECRET_KEY,
    DEFAULT_SOURCE_KEY,
    ResourceLabels,
)

EnvParser = Callable[[str, str | None], dict[str, str]]


def encode_secret_data(values: dict[str, str]) -> dict[str, str]:
    """Base64-encode plaintext values for the ``data`` field of a Secret."""
    return {
        key: base64.b64encode(value.encode("utf-8")).decode("ascii")
        for key, value in values.items()
    }


class SecretMaterializer:
    """Turns a source ConfigMap into the generated Secret and writes it.

    The materializer reads the encrypted ``.env`` text from the ConfigMap,
    resolves the optional decryption key from a Secret in the same namespace,
    hands both to the env parser and writes the resulting Secret with
    ``create`` or ``replace``.  No write is issued unless every preceding
    step succeeded.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        labels: ResourceLabels | None = None,
        parse_env: EnvParser = parse_env_content,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.labels = labels or ResourceLabels()
        self.parse_env = parse_env
        self.logger = logger or logging.getLogger(__name__)

    def source_content(self, config_map: Any) -> str:
        labels = config_map.metadata.labels or {}
        source_key = labels.get(self.labels.source_key, DEFAULT_SOURCE_KEY)
        content = (config_map.data or {}).get(source_key)
        if content is None:
            raise MissingSourceKey(config_map.metadata.name, source_key)
        return content

    def resolve_decryption_key(self, config_map: Any) -> str | None:
        """Return the decryption key referenced by the ConfigMap, or ``None``.

        The key Secret is looked up by name in the ConfigMap's own namespace.
        Nothing ties that Secret to the ConfigMap, so any ConfigMap author can
        reference any Secret in their namespace.
        """
        labels = config_map.metadata.labels or {}
        key_secret_name = labels.get(self.labels.decryption_secret)
        if not key_secret_name:
            return None
        key_secret_key = labels.get(self.labels.decryption_secret_key, DEFAULT_DECRYPTION_SECRET_KEY)

        key_secret = read_secret(
            self.core_api, name=key_secret_name, namespace=config_map.metadata.namespace
        )
        encoded = (key_secret.data or {}).get(key_secret_key)
        if encoded is None:
            raise MissingDecryptionKey(key_secret_name, key_secret_key)
        try:
            return base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise DecryptionFailed(
                f"Key {key_secret_key} in secret {key_secret_name} is not valid base64 text"
            ) from exc

    def decrypt(self, content: str, decryption_key: str | None) -> dict[str, str]:
        try:
            return self.parse_env(content, decryption_key)
        except DecryptionFailed:
            raise
        except Exception as exc:
            raise DecryptionFailed(str(exc)) from exc

    def build_secret(self, config_map: Any, values: dict[str, str]) -> V1Secret:
        metadata = config_map.metadata
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=V1ObjectMeta(
                name=metadata.labels[self.labels.target_secret],
                namespace=metadata.namespace,
                labels={
                    self.labels.source_configmap: metadata.name,
                    self.labels.source_configmap_version: metadata.resource_version,
                },
            ),
            type="Opaque",
            data=encode_secret_data(values),
        )

    def materialize(self, config_map: Any, existing_secret: Any = None) -> V1Secret:
        """Build the Secret for ``config_map`` and write it to the cluster.

        When ``existing_secret`` is given the Secret is replaced in place under
        that identity, otherwise it is created.  Returns the object reported by
        the API server.
        """
        content = self.source_content(config_map)
        decryption_key = self.resolve_decryption_key(config_map)
        values = self.decrypt(content, decryption_key)
        body = self.build_secret(config_map, values)

        if existing_secret is not None:
            identity = existing_secret.metadata
            body.metadata.name = identity.name
            body.metadata.namespace = identity.namespace
            self.logger.debug("Replacing secret %s/%s", identity.namespace, identity.name)
            return replace_secret(
                self.core_api, name=identity.name, namespace=identity.namespace, body=body
            )

        self.logger.debug("Creating secret %s/%s", body.metadata.namespace, body.metadata.name)
        return create_secret(self.core_api, namespace=body.metadata.namespace, body=body)
