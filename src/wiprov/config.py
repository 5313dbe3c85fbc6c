from __future__ import annotations

"""Configuration models.

CONTRACT
- Inputs: YAML file path (provision.yaml), CLI values, environment
- Outputs (required):
  - Validated ProvisionSettings, ResourceNames, HookInputs, RunConfig objects
- Invariants:
  - Resource names carry one shared random suffix per run
  - Key Vault names never exceed 24 characters
  - Default values reproduce the demo environment (eastus2, 1 node, "Hello!" secret)
- Failure:
  - Raises ValueError on invalid schema or values
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .artifacts.schemas import PlanName
from .util.ids import new_resource_suffix

DEFAULT_LOCATION = "eastus2"
KEYVAULT_NAME_MAX = 24


@dataclass(frozen=True)
class NamePrefixes:
    resource_group: str = "myResourceGroup"
    cluster: str = "myAKSCluster"
    identity: str = "myIdentity"
    service_account: str = "workload-identity-sa"
    federated_credential: str = "myFedIdentity"
    keyvault: str = "keyvault-workload-id"
    keyvault_secret: str = "my-secret"


@dataclass(frozen=True)
class ClusterSettings:
    node_count: int = 1
    timeout_s: int = 1800


@dataclass(frozen=True)
class CertificateSettings:
    name: str = "workload-identity-cert"
    subject: str = "CN=workload-identity.local"
    dns_name: str = "workload-identity.local"
    validity_months: int = 12

    @classmethod
    def from_env(cls, base: CertificateSettings | None = None) -> CertificateSettings:
        """Apply CERT_NAME / CERT_SUBJECT / CERT_DNS_NAME / CERT_VALIDITY_MONTHS overrides."""
        base = base or cls()
        return cls(
            name=os.environ.get("CERT_NAME", base.name),
            subject=os.environ.get("CERT_SUBJECT", base.subject),
            dns_name=os.environ.get("CERT_DNS_NAME", base.dns_name),
            validity_months=int(os.environ.get("CERT_VALIDITY_MONTHS", base.validity_months)),
        )


@dataclass(frozen=True)
class ProvisionSettings:
    location: str = DEFAULT_LOCATION
    namespace: str = "default"
    names: NamePrefixes = field(default_factory=NamePrefixes)
    cluster: ClusterSettings = field(default_factory=ClusterSettings)
    certificate: CertificateSettings = field(default_factory=CertificateSettings)
    secret_value: str = "Hello!"
    step_timeout_s: int = 600
    cleanup_wait: bool = False


@dataclass(frozen=True)
class ResourceNames:
    suffix: str
    resource_group: str
    cluster: str
    identity: str
    service_account: str
    federated_credential: str
    keyvault: str
    keyvault_secret: str

    @classmethod
    def generate(cls, prefixes: NamePrefixes | None = None, suffix: str | None = None) -> ResourceNames:
        p = prefixes or NamePrefixes()
        sfx = suffix or new_resource_suffix()
        return cls(
            suffix=sfx,
            resource_group=f"{p.resource_group}{sfx}",
            cluster=f"{p.cluster}{sfx}",
            identity=f"{p.identity}{sfx}",
            service_account=f"{p.service_account}{sfx}",
            federated_credential=f"{p.federated_credential}{sfx}",
            keyvault=f"{p.keyvault}{sfx}"[:KEYVAULT_NAME_MAX],
            keyvault_secret=f"{p.keyvault_secret}{sfx}",
        )


@dataclass(frozen=True)
class HookInputs:
    """Arguments handed to the deployment hooks (postprovision/preprovision)."""

    resource_group: str = ""
    cluster: str = ""
    keyvault: str = ""
    env_name: str = ""
    identity_client_id: str = ""
    identity_name: str = ""

    def missing_for_postprovision(self) -> list[str]:
        # Env name and identity are optional: see env_file() and the client id lookup.
        return [
            label
            for label, value in (
                ("resource group", self.resource_group),
                ("AKS cluster", self.cluster),
                ("Key Vault name", self.keyvault),
            )
            if not value
        ]

    def env_file(self, root: Path) -> Path:
        """.azure/<env>/.env, or .azure/.env when no environment name is given."""
        if not self.env_name:
            return root / ".azure" / ".env"
        return root / ".azure" / self.env_name / ".env"


@dataclass(frozen=True)
class RunConfig:
    run_id: str
    plan: PlanName
    artifacts_root: Path
    workdir: Path = Path(".")
    settings: ProvisionSettings = field(default_factory=ProvisionSettings)
    skip_preflight: bool = False

    def run_dir(self) -> Path:
        return self.artifacts_root / self.run_id


_STR = {"type": "string", "minLength": 1}
_POS_INT = {"type": "integer", "minimum": 1}

CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "location": _STR,
        "namespace": _STR,
        "names": {
            "type": "object",
            "additionalProperties": False,
            "properties": {k: _STR for k in NamePrefixes.__dataclass_fields__},
        },
        "cluster": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"node_count": _POS_INT, "timeout_s": _POS_INT},
        },
        "keyvault": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"secret_value": _STR},
        },
        "certificate": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "name": _STR,
                "subject": _STR,
                "dns_name": _STR,
                "validity_months": _POS_INT,
            },
        },
        "step_timeout_s": _POS_INT,
        "cleanup_wait": {"type": "boolean"},
    },
}


def settings_from_dict(data: dict[str, Any]) -> ProvisionSettings:
    import jsonschema  # lazy import

    try:
        jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ValueError(f"Invalid provision config: {e.message}") from e

    names_raw = data.get("names", {}) or {}
    cluster_raw = data.get("cluster", {}) or {}
    kv_raw = data.get("keyvault", {}) or {}
    cert_raw = data.get("certificate", {}) or {}
    defaults = ProvisionSettings()
    return ProvisionSettings(
        location=str(data.get("location", defaults.location)),
        namespace=str(data.get("namespace", defaults.namespace)),
        names=NamePrefixes(**{k: str(v) for k, v in names_raw.items()}),
        cluster=ClusterSettings(
            node_count=int(cluster_raw.get("node_count", 1)),
            timeout_s=int(cluster_raw.get("timeout_s", 1800)),
        ),
        certificate=CertificateSettings(**cert_raw),
        secret_value=str(kv_raw.get("secret_value", defaults.secret_value)),
        step_timeout_s=int(data.get("step_timeout_s", defaults.step_timeout_s)),
        cleanup_wait=bool(data.get("cleanup_wait", defaults.cleanup_wait)),
    )


def load_config_file(path: Path) -> ProvisionSettings:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid provision config: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Invalid provision config: expected a mapping in {path}")
    return settings_from_dict(data)


def resolve_settings(config_file: Path | None, workdir: Path) -> ProvisionSettings:
    """Explicit file, else <workdir>/.wiprov/provision.yaml, else defaults."""
    if config_file is not None:
        if not config_file.exists():
            raise ValueError(f"Config file not found: {config_file}")
        return load_config_file(config_file)
    local = workdir / ".wiprov" / "provision.yaml"
    if local.exists():
        return load_config_file(local)
    return ProvisionSettings()
