from __future__ import annotations

"""`setup` plan: AKS cluster with workload identity bound to a Key Vault.

CONTRACT
- Inputs: ProvisionSettings, ResourceNames, ArtifactStore (for rendered manifests)
- Outputs (context keys):
  - subscriptionId, tenantId, identityClientId, oidcIssuerUrl, keyVaultId,
    callerObjectId, identityPrincipalId, keyVaultUrl, secretProviderClassPath
- Invariants:
  - create-resource-group is the only container-creating step
  - Cleanup deletes the resource group (`--no-wait` unless cleanup_wait)
"""

from ..artifacts.store import ArtifactStore
from ..config import ProvisionSettings, ResourceNames
from ..manifests import (
    TOKEN_EXCHANGE_AUDIENCE,
    federated_subject,
    secret_provider_class_manifest,
    service_account_manifest,
)
from ..runner import CleanupAction, RunContext, Step
from .base import Plan

SECRETS_OFFICER_ROLE = "Key Vault Secrets Officer"
SECRETS_USER_ROLE = "Key Vault Secrets User"


def initial_context(settings: ProvisionSettings, names: ResourceNames) -> dict[str, str]:
    return {
        "location": settings.location,
        "randomId": names.suffix,
        "resourceGroupName": names.resource_group,
        "clusterName": names.cluster,
        "identityName": names.identity,
        "serviceAccountNamespace": settings.namespace,
        "serviceAccountName": names.service_account,
        "federatedCredentialName": names.federated_credential,
        "keyVaultName": names.keyvault,
        "keyVaultSecretName": names.keyvault_secret,
        "nodeCount": str(settings.cluster.node_count),
    }


def delete_group_cleanup(wait: bool) -> CleanupAction:
    argv = ["az", "group", "delete", "--name", "{resourceGroupName}", "--yes"]
    if not wait:
        argv.append("--no-wait")
    return CleanupAction(name="delete-resource-group", argv=tuple(argv))


def service_account_steps(timeout_s: float) -> list[Step]:
    def _manifest(ctx: RunContext) -> str:
        return service_account_manifest(
            ctx["serviceAccountName"], ctx["serviceAccountNamespace"], ctx["identityClientId"]
        )

    return [
        Step.cli(
            "apply-service-account",
            ["kubectl", "apply", "-f", "-"],
            stdin=_manifest,
            requires=("serviceAccountName", "serviceAccountNamespace", "identityClientId"),
            timeout_s=timeout_s,
            description="kubectl apply ServiceAccount annotated with the identity client id",
        ),
        Step.cli(
            "verify-service-account",
            ["kubectl", "get", "serviceaccount", "{serviceAccountName}", "-n", "{serviceAccountNamespace}"],
            timeout_s=timeout_s,
        ),
    ]


def build_setup_plan(settings: ProvisionSettings, names: ResourceNames, store: ArtifactStore) -> Plan:
    t = settings.step_timeout_s
    secret_value = settings.secret_value

    def _render_secret_provider_class(ctx: RunContext) -> dict[str, str]:
        manifest = secret_provider_class_manifest(
            client_id=ctx["identityClientId"],
            keyvault_name=ctx["keyVaultName"],
            tenant_id=ctx["tenantId"],
            secret_names=[ctx["keyVaultSecretName"]],
            namespace=ctx["serviceAccountNamespace"],
        )
        path = store.write_text("manifests/secretproviderclass.yaml", manifest)
        return {"secretProviderClassPath": str(path)}

    steps = [
        Step.cli(
            "create-resource-group",
            ["az", "group", "create", "--name", "{resourceGroupName}", "--location", "{location}", "--output", "none"],
            creates_container=True,
            timeout_s=t,
        ),
        Step.cli(
            "get-subscription",
            ["az", "account", "show", "--query", "id", "--output", "tsv"],
            capture="subscriptionId",
            timeout_s=t,
        ),
        Step.cli(
            "get-tenant",
            ["az", "account", "show", "--query", "tenantId", "--output", "tsv"],
            capture="tenantId",
            timeout_s=t,
        ),
        Step.cli(
            "create-aks-cluster",
            [
                "az", "aks", "create",
                "--resource-group", "{resourceGroupName}",
                "--name", "{clusterName}",
                "--enable-oidc-issuer",
                "--enable-workload-identity",
                "--generate-ssh-keys",
                "--node-count", "{nodeCount}",
                "--output", "none",
            ],
            timeout_s=settings.cluster.timeout_s,
        ),
        Step.cli(
            "create-managed-identity",
            [
                "az", "identity", "create",
                "--name", "{identityName}",
                "--resource-group", "{resourceGroupName}",
                "--location", "{location}",
                "--subscription", "{subscriptionId}",
                "--output", "none",
            ],
            timeout_s=t,
        ),
        Step.cli(
            "get-identity-client-id",
            [
                "az", "identity", "show",
                "--resource-group", "{resourceGroupName}",
                "--name", "{identityName}",
                "--query", "clientId",
                "--output", "tsv",
            ],
            capture="identityClientId",
            timeout_s=t,
        ),
        Step.cli(
            "get-aks-credentials",
            [
                "az", "aks", "get-credentials",
                "--name", "{clusterName}",
                "--resource-group", "{resourceGroupName}",
                "--overwrite-existing",
            ],
            timeout_s=t,
        ),
        Step.cli(
            "get-oidc-issuer",
            [
                "az", "aks", "show",
                "--name", "{clusterName}",
                "--resource-group", "{resourceGroupName}",
                "--query", "oidcIssuerProfile.issuerUrl",
                "--output", "tsv",
            ],
            capture="oidcIssuerUrl",
            timeout_s=t,
        ),
        *service_account_steps(t),
        Step.cli(
            "create-federated-credential",
            [
                "az", "identity", "federated-credential", "create",
                "--name", "{federatedCredentialName}",
                "--identity-name", "{identityName}",
                "--resource-group", "{resourceGroupName}",
                "--issuer", "{oidcIssuerUrl}",
                "--subject", federated_subject("{serviceAccountNamespace}", "{serviceAccountName}"),
                "--audience", TOKEN_EXCHANGE_AUDIENCE,
                "--output", "none",
            ],
            timeout_s=t,
        ),
        Step.cli(
            "create-key-vault",
            [
                "az", "keyvault", "create",
                "--name", "{keyVaultName}",
                "--resource-group", "{resourceGroupName}",
                "--location", "{location}",
                "--enable-purge-protection", "true",
                "--enable-rbac-authorization", "true",
                "--output", "none",
            ],
            timeout_s=t,
        ),
        Step.cli(
            "get-key-vault-id",
            [
                "az", "keyvault", "show",
                "--resource-group", "{resourceGroupName}",
                "--name", "{keyVaultName}",
                "--query", "id",
                "--output", "tsv",
            ],
            capture="keyVaultId",
            timeout_s=t,
        ),
        Step.cli(
            "get-caller-object-id",
            ["az", "ad", "signed-in-user", "show", "--query", "id", "--output", "tsv"],
            capture="callerObjectId",
            timeout_s=t,
        ),
        Step.cli(
            "assign-secrets-officer-role",
            [
                "az", "role", "assignment", "create",
                "--assignee", "{callerObjectId}",
                "--role", SECRETS_OFFICER_ROLE,
                "--scope", "{keyVaultId}",
                "--output", "none",
            ],
            timeout_s=t,
        ),
        Step(
            name="set-test-secret",
            command=lambda ctx: [
                "az", "keyvault", "secret", "set",
                "--vault-name", ctx["keyVaultName"],
                "--name", ctx["keyVaultSecretName"],
                "--value", secret_value,
                "--output", "none",
            ],
            requires=("keyVaultName", "keyVaultSecretName", "callerObjectId"),
            timeout_s=t,
            description="az keyvault secret set (value from config)",
        ),
        Step.cli(
            "get-identity-principal-id",
            [
                "az", "identity", "show",
                "--name", "{identityName}",
                "--resource-group", "{resourceGroupName}",
                "--query", "principalId",
                "--output", "tsv",
            ],
            capture="identityPrincipalId",
            timeout_s=t,
        ),
        Step.cli(
            "assign-secrets-user-role",
            [
                "az", "role", "assignment", "create",
                "--assignee-object-id", "{identityPrincipalId}",
                "--role", SECRETS_USER_ROLE,
                "--scope", "{keyVaultId}",
                "--assignee-principal-type", "ServicePrincipal",
                "--output", "none",
            ],
            timeout_s=t,
        ),
        Step.cli(
            "get-key-vault-url",
            [
                "az", "keyvault", "show",
                "--resource-group", "{resourceGroupName}",
                "--name", "{keyVaultName}",
                "--query", "properties.vaultUri",
                "--output", "tsv",
            ],
            capture="keyVaultUrl",
            timeout_s=t,
        ),
        Step(
            name="render-secret-provider-class",
            action=_render_secret_provider_class,
            requires=(
                "identityClientId",
                "keyVaultName",
                "tenantId",
                "keyVaultSecretName",
                "serviceAccountNamespace",
            ),
            provides=("secretProviderClassPath",),
            description="write manifests/secretproviderclass.yaml",
        ),
    ]
    return Plan(
        name="setup",
        steps=steps,
        initial=initial_context(settings, names),
        cleanup=delete_group_cleanup(settings.cleanup_wait),
        required_tools=("az", "kubectl"),
    )
