from __future__ import annotations

"""Deployment hook plans (`preprovision`, `postprovision`).

CONTRACT
- Inputs: HookInputs (resource group, cluster, Key Vault; optional env name and identity), workdir
- Outputs:
  - postprovision: self-signed certificate in Key Vault, PEM stored as
    AZURE_PEM_SECRET in .azure/<env>/.env, kubeconfig, workload-identity
    ServiceAccount
  - preprovision: .ssh/id_rsa key pair, SSH_PUBLIC_KEY in .azure/<env>/.env
- Invariants:
  - Neither plan creates a container resource, so neither registers cleanup
  - SSH_PUBLIC_KEY is written at most once per env file
  - CERT_NAME / CERT_SUBJECT / CERT_DNS_NAME / CERT_VALIDITY_MONTHS override the
    configured certificate settings
  - Without a client id or identity name, the client id of the only identity in
    the resource group is used
- Failure:
  - Action steps raise RuntimeError; the runner turns that into a step failure
"""

from pathlib import Path

from loguru import logger

from ..artifacts.store import ArtifactStore
from ..config import CertificateSettings, HookInputs, ProvisionSettings
from ..manifests import certificate_policy
from ..runner import RunContext, Step
from ..util.shell import run_cmd, tail
from .base import Plan
from .setup import service_account_steps

HOOK_SERVICE_ACCOUNT = "workload-identity-sa"
SSH_KEY_DIR = ".ssh"
SSH_KEY_NAME = "id_rsa"


def _append_env_line(env_file: Path, line: str) -> None:
    env_file.parent.mkdir(parents=True, exist_ok=True)
    with env_file.open("a", encoding="utf-8") as f:
        f.write(line.rstrip("\n") + "\n")


def build_postprovision_plan(
    settings: ProvisionSettings,
    inputs: HookInputs,
    store: ArtifactStore,
    workdir: Path,
    certificate: CertificateSettings | None = None,
) -> Plan:
    cert = certificate or CertificateSettings.from_env(settings.certificate)
    t = settings.step_timeout_s
    env_file = inputs.env_file(workdir)

    def _write_policy(ctx: RunContext) -> dict[str, str]:
        logger.info(f"Creating certificate policy for subject: {cert.subject}")
        policy = certificate_policy(cert.subject, cert.dns_name, cert.validity_months)
        path = store.write_json("cert-policy.json", policy)
        return {"certPolicyPath": str(path.resolve())}

    def _store_secret(ctx: RunContext) -> dict[str, str]:
        _append_env_line(env_file, f'AZURE_PEM_SECRET="{ctx["certificatePem"]}"')
        logger.info(f"Certificate secret stored in environment file: {env_file}")
        return {"envFile": str(env_file)}

    initial = {
        "resourceGroupName": inputs.resource_group,
        "clusterName": inputs.cluster,
        "keyVaultName": inputs.keyvault,
        "certificateName": cert.name,
        "serviceAccountName": HOOK_SERVICE_ACCOUNT,
        "serviceAccountNamespace": settings.namespace,
    }
    steps: list[Step] = [
        Step(
            name="write-certificate-policy",
            action=_write_policy,
            provides=("certPolicyPath",),
            description="write cert-policy.json",
        ),
        Step.cli(
            "create-certificate",
            [
                "az", "keyvault", "certificate", "create",
                "--vault-name", "{keyVaultName}",
                "--name", "{certificateName}",
                "--policy", "@{certPolicyPath}",
                "--output", "none",
            ],
            timeout_s=t,
        ),
        Step.cli(
            "fetch-certificate-secret",
            [
                "az", "keyvault", "secret", "show",
                "--vault-name", "{keyVaultName}",
                "--name", "{certificateName}",
                "--query", "value",
                "--output", "tsv",
            ],
            capture="certificatePem",
            sensitive=True,
            timeout_s=t,
        ),
        Step(
            name="store-certificate-secret",
            action=_store_secret,
            requires=("certificatePem",),
            provides=("envFile",),
            description=f"append AZURE_PEM_SECRET to {env_file}",
        ),
        Step.cli(
            "get-aks-credentials",
            [
                "az", "aks", "get-credentials",
                "--resource-group", "{resourceGroupName}",
                "--name", "{clusterName}",
                "--overwrite-existing",
                "--output", "none",
            ],
            timeout_s=t,
        ),
    ]

    if inputs.identity_client_id:
        initial["identityClientId"] = inputs.identity_client_id
    elif inputs.identity_name:
        initial["identityName"] = inputs.identity_name
        steps.append(
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
            )
        )
    else:
        # The provisioned environment holds a single user-assigned identity.
        steps.append(
            Step.cli(
                "get-identity-client-id",
                [
                    "az", "identity", "list",
                    "--resource-group", "{resourceGroupName}",
                    "--query", "[0].clientId",
                    "--output", "tsv",
                ],
                capture="identityClientId",
                timeout_s=t,
            )
        )
    steps.extend(service_account_steps(t))

    return Plan(
        name="postprovision",
        steps=steps,
        initial=initial,
        required_tools=("az", "kubectl"),
    )


def ensure_ssh_key(key_file: Path) -> Path:
    """Generate an RSA-4096 key pair unless `<key_file>.pub` already exists."""
    pub = key_file.with_name(key_file.name + ".pub")
    if pub.exists():
        logger.info("SSH key already exists.")
        return pub
    key_file.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Generating SSH key pair...")
    res = run_cmd(
        ["ssh-keygen", "-t", "rsa", "-b", "4096", "-f", str(key_file), "-N", "", "-q"],
        cwd=key_file.parent,
        timeout_s=60,
    )
    if res.returncode != 0 or not pub.exists():
        raise RuntimeError(f"ssh-keygen failed (rc={res.returncode}): {tail(res.stderr, 5)}")
    return pub


def record_public_key(env_file: Path, public_key: str) -> bool:
    """Append SSH_PUBLIC_KEY to the env file unless present. Returns True if written."""
    existing = env_file.read_text(encoding="utf-8") if env_file.exists() else ""
    if "SSH_PUBLIC_KEY" in existing:
        logger.info(f"SSH_PUBLIC_KEY already present in {env_file}")
        return False
    _append_env_line(env_file, f'SSH_PUBLIC_KEY="{public_key.strip()}"')
    logger.info(f"Added SSH_PUBLIC_KEY to {env_file}")
    return True


def build_preprovision_plan(inputs: HookInputs, workdir: Path) -> Plan:
    key_file = workdir / SSH_KEY_DIR / SSH_KEY_NAME
    env_file = inputs.env_file(workdir)

    def _ensure_key(ctx: RunContext) -> dict[str, str]:
        return {"sshPublicKeyPath": str(ensure_ssh_key(key_file))}

    def _record(ctx: RunContext) -> dict[str, str]:
        record_public_key(env_file, Path(ctx["sshPublicKeyPath"]).read_text(encoding="utf-8"))
        return {"envFile": str(env_file)}

    return Plan(
        name="preprovision",
        steps=[
            Step(name="ensure-ssh-key", action=_ensure_key, provides=("sshPublicKeyPath",)),
            Step(
                name="record-ssh-public-key",
                action=_record,
                requires=("sshPublicKeyPath",),
                provides=("envFile",),
            ),
        ],
        initial={"envName": inputs.env_name},
        required_tools=("ssh-keygen",),
        check_login=False,
    )
