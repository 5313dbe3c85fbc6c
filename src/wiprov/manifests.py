"""Manifest and policy rendering.

Kubernetes manifests are built as plain dicts and dumped with PyYAML; the
SecretProviderClass starts from the bundled template.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import yaml

from .util.paths import read_template

WORKLOAD_IDENTITY_CLIENT_ID = "azure.workload.identity/client-id"
TOKEN_EXCHANGE_AUDIENCE = "api://AzureADTokenExchange"


def federated_subject(namespace: str, service_account: str) -> str:
    return f"system:serviceaccount:{namespace}:{service_account}"


def service_account_manifest(name: str, namespace: str, client_id: str) -> str:
    doc = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "annotations": {WORKLOAD_IDENTITY_CLIENT_ID: client_id},
            "name": name,
            "namespace": namespace,
        },
    }
    return yaml.safe_dump(doc, sort_keys=False)


def secret_provider_class_manifest(
    *,
    client_id: str,
    keyvault_name: str,
    tenant_id: str,
    secret_names: Sequence[str],
    namespace: str = "default",
    name: str = "kv-sync",
) -> str:
    """SecretProviderClass that mounts each Key Vault secret and syncs it to a k8s Secret."""
    doc: dict[str, Any] = yaml.safe_load(read_template("secretproviderclass.yaml"))
    doc["metadata"].update({"name": name, "namespace": namespace})
    params = doc["spec"]["parameters"]
    params["clientID"] = client_id
    params["keyvaultName"] = keyvault_name
    params["tenantId"] = tenant_id
    # The CSI driver expects `objects` as a YAML string holding a list of YAML strings.
    objects = [
        yaml.safe_dump({"objectName": s, "objectType": "secret", "secretName": s}, sort_keys=False)
        for s in secret_names
    ]
    params["objects"] = yaml.safe_dump({"array": objects}, sort_keys=False)
    doc["spec"]["secretObjects"] = [
        {"secretName": s, "type": "Opaque", "data": [{"key": s, "objectName": s}]} for s in secret_names
    ]
    return yaml.safe_dump(doc, sort_keys=False)


def certificate_policy(subject: str, dns_name: str, validity_months: int) -> dict[str, Any]:
    """Self-signed Key Vault certificate policy with an exportable RSA-2048 key."""
    return {
        "issuerParameters": {"name": "Self"},
        "x509CertificateProperties": {
            "subject": subject,
            "validityInMonths": validity_months,
            "keyUsage": ["digitalSignature", "keyEncipherment"],
            "subjectAlternativeNames": {"dnsNames": [dns_name]},
        },
        "keyProperties": {
            "exportable": True,
            "keyType": "RSA",
            "keySize": 2048,
            "reuseKey": False,
        },
        "secretProperties": {"contentType": "application/x-pem-file"},
    }
