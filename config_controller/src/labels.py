from __future__ import annotations

from dataclasses import dataclass

DEFAULT_LABEL_PREFIX = "config.s24.dev"
DEFAULT_SOURCE_KEY = ".env"
DEFAULT_DECRYPTION_SECRET_KEY = "CONFIG_DECRYPTION_KEY"


@dataclass(frozen=True)
class ResourceLabels:
    """Label names read from source ConfigMaps and stamped on generated Secrets.

    Every label lives under a common ``prefix`` (``config.s24.dev`` by default)
    so several controller installations can coexist with distinct prefixes.
    """

    prefix: str = DEFAULT_LABEL_PREFIX

    def _label(self, name: str) -> str:
        return f"{self.prefix}/{name}"

    @property
    def target_secret(self) -> str:
        return self._label("target-secret")

    @property
    def source_key(self) -> str:
        return self._label("source-key")

    @property
    def decryption_secret(self) -> str:
        return self._label("decryption-secret")

    @property
    def decryption_secret_key(self) -> str:
        return self._label("decryption-secret-key")

    @property
    def source_configmap(self) -> str:
        return self._label("source-configmap")

    @property
    def source_configmap_version(self) -> str:
        return self._label("source-configmap-version")

    @property
    def config_map_selector(self) -> str:
        """Existence selector matching ConfigMaps that request a Secret."""
        return self.target_secret

    @property
    def secret_selector(self) -> str:
        """Existence selector matching Secrets produced by this controller."""
        return self.source_configmap
