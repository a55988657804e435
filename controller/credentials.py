"""
Client certificate and kubeconfig issuance for approved role requests.

A private key and CSR are generated locally, submitted as a
CertificateSigningRequest, approved by the controller and collected once the
signer has issued the certificate. The resulting kubeconfig is stored in a
Secret next to the request.
"""

import base64
import logging
import os
import time
from datetime import datetime, timezone

import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from kubernetes import client
from kubernetes.client.rest import ApiException

from controller.config import (
    CERT_EXPIRATION_SECONDS, CLUSTER_SERVER, CSR_SIGNER, LABEL_GENERATED,
)

logger = logging.getLogger(__name__)

_SA_CA_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"


class CredentialError(Exception):
    pass


def in_cluster_server() -> str:
    if CLUSTER_SERVER:
        return CLUSTER_SERVER
    # In-cluster: host is injected as KUBERNETES_SERVICE_HOST/PORT
    host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    return f"https://{host}:{port}" if host else ""


def in_cluster_ca() -> str:
    """Base64 CA bundle of the in-cluster service account, or empty."""
    if os.path.exists(_SA_CA_PATH):
        with open(_SA_CA_PATH, "rb") as f:
            return base64.b64encode(f.read()).decode()
    return ""


def build_kubeconfig(server: str, ca_data: str, namespace: str, email: str,
                     cert_pem: bytes, key_pem: bytes) -> dict:
    cluster_name = "tenancy"
    context_name = f"{namespace}-{email}"
    cluster = {"server": server}
    if ca_data:
        cluster["certificate-authority-data"] = ca_data
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": cluster_name, "cluster": cluster}],
        "users": [{
            "name": email,
            "user": {
                "client-certificate-data": base64.b64encode(cert_pem).decode(),
                "client-key-data": base64.b64encode(key_pem).decode(),
            },
        }],
        "contexts": [{
            "name": context_name,
            "context": {"cluster": cluster_name, "user": email, "namespace": namespace},
        }],
        "current-context": context_name,
    }


class KubeCredentialIssuer:
    def __init__(self, api_client: client.ApiClient | None = None, server: str | None = None,
                 ca_data: str | None = None, signer: str = CSR_SIGNER,
                 expiration_seconds: int = CERT_EXPIRATION_SECONDS,
                 timeout: float = 30.0, poll_interval: float = 1.0):
        self.certs_v1 = client.CertificatesV1Api(api_client=api_client)
        self.core_v1 = client.CoreV1Api(api_client=api_client)
        self.server = in_cluster_server() if server is None else server
        self.ca_data = in_cluster_ca() if ca_data is None else ca_data
        self.signer = signer
        self.expiration_seconds = expiration_seconds
        self.timeout = timeout
        self.poll_interval = poll_interval

    def generate_client_cert(self, namespace: str, policy_name: str, email: str) -> tuple[bytes, bytes]:
        """Return ``(cert_pem, key_pem)`` for ``email`` scoped to ``namespace``."""
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([
                x509.NameAttribute(NameOID.COMMON_NAME, email),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, namespace),
            ]))
            .sign(key, hashes.SHA256())
        )
        csr_name = f"{namespace}-{policy_name}"
        body = client.V1CertificateSigningRequest(
            metadata=client.V1ObjectMeta(name=csr_name, labels={LABEL_GENERATED: "true"}),
            spec=client.V1CertificateSigningRequestSpec(
                request=base64.b64encode(csr.public_bytes(serialization.Encoding.PEM)).decode(),
                signer_name=self.signer,
                usages=["client auth"],
                expiration_seconds=self.expiration_seconds,
            ),
        )
        try:
            self.certs_v1.create_certificate_signing_request(body=body)
        except ApiException as e:
            if e.status != 409:
                raise CredentialError(f"CSR {csr_name} creation failed: {e.status}") from e
            # A previous approval left its CSR behind; start over with the new key
            self.certs_v1.delete_certificate_signing_request(name=csr_name)
            self.certs_v1.create_certificate_signing_request(body=body)
        logger.info(f"📝 created CSR={csr_name} for {email}")

        self._approve(csr_name, email)
        cert_pem = self._wait_for_certificate(csr_name)
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cert_pem, key_pem

    def _approve(self, csr_name: str, email: str) -> None:
        try:
            csr = self.certs_v1.read_certificate_signing_request(name=csr_name)
            conditions = list(csr.status.conditions or []) if csr.status else []
            conditions.append(client.V1CertificateSigningRequestCondition(
                type="Approved",
                status="True",
                reason="RoleRequestApproved",
                message=f"role request approved for {email}",
                last_update_time=datetime.now(timezone.utc),
            ))
            csr.status = client.V1CertificateSigningRequestStatus(conditions=conditions)
            self.certs_v1.replace_certificate_signing_request_approval(name=csr_name, body=csr)
        except ApiException as e:
            raise CredentialError(f"CSR {csr_name} approval failed: {e.status}") from e

    def _wait_for_certificate(self, csr_name: str) -> bytes:
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                csr = self.certs_v1.read_certificate_signing_request(name=csr_name)
            except ApiException as e:
                raise CredentialError(f"CSR {csr_name} read failed: {e.status}") from e
            if csr.status and csr.status.certificate:
                return base64.b64decode(csr.status.certificate)
            if time.monotonic() >= deadline:
                raise CredentialError(f"CSR {csr_name} not signed within {self.timeout}s")
            time.sleep(self.poll_interval)

    def make_kubeconfig(self, namespace: str, policy_name: str, email: str,
                        cert_pem: bytes, key_pem: bytes) -> str:
        """Store a kubeconfig for ``email`` in a Secret; returns the Secret name."""
        kubeconfig = build_kubeconfig(self.server, self.ca_data, namespace, email, cert_pem, key_pem)
        secret_name = f"{policy_name}-kubeconfig"
        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=secret_name,
                namespace=namespace,
                labels={LABEL_GENERATED: "true"},
                annotations={"tenancy.opsmode.io/owner": email},
            ),
            data={"kubeconfig": base64.b64encode(yaml.safe_dump(kubeconfig).encode()).decode()},
        )
        try:
            self.core_v1.create_namespaced_secret(namespace=namespace, body=secret)
            logger.info(f"🔐 stored kubeconfig Secret={secret_name} in ns={namespace}")
        except ApiException as e:
            if e.status != 409:
                raise CredentialError(f"kubeconfig Secret {secret_name} failed: {e.status}") from e
            try:
                self.core_v1.replace_namespaced_secret(name=secret_name, namespace=namespace, body=secret)
            except ApiException as re_err:
                raise CredentialError(f"kubeconfig Secret {secret_name} failed: {re_err.status}") from re_err
            logger.info(f"🔐 replaced kubeconfig Secret={secret_name} in ns={namespace}")
        return secret_name
