"""
kubeherd/services/certs.py

Registry TLS material. The registry on master-0 serves a self-signed
certificate; every host that pulls from it needs that certificate under
/etc/docker/certs.d/<domain>:<port>/ca.crt.
"""

from __future__ import annotations

import asyncio
import datetime
import ipaddress
import logging
import os
from typing import List, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kubeherd.models.runtime import RegistryConfig
from kubeherd.services.interfaces import CertService, CertificateDescriptor
from kubeherd.utils.fanout import fan_out
from kubeherd.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)

REMOTE_CERTS_DIR = "/etc/docker/certs.d"


def _self_signed(descriptor: CertificateDescriptor) -> Tuple[bytes, bytes]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, descriptor.common_name)]
    attrs += [x509.NameAttribute(NameOID.ORGANIZATION_NAME, o) for o in descriptor.organization]
    name = x509.Name(attrs)

    sans: List[x509.GeneralName] = [x509.DNSName(d) for d in descriptor.dns_names]
    sans += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in descriptor.ip_addresses]

    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=365 * descriptor.years))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
    )
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    cert = builder.sign(key, hashes.SHA256())

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


class RegistryCertService(CertService):
    """
    Generates the registry certificate into a local directory and copies it
    to hosts through the fan-out coordinator.
    """

    def __init__(
        self,
        registry: RegistryConfig,
        cert_dir: str,
        executor: RemoteExecutor,
        *,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.cert_dir = cert_dir
        self.executor = executor
        self.max_concurrency = max_concurrency

    @property
    def cert_path(self) -> str:
        return os.path.join(self.cert_dir, f"{self.registry.domain}.crt")

    @property
    def key_path(self) -> str:
        return os.path.join(self.cert_dir, f"{self.registry.domain}.key")

    def descriptor(self) -> CertificateDescriptor:
        return CertificateDescriptor(
            common_name=self.registry.domain,
            dns_names=[self.registry.domain],
            ip_addresses=[self.registry.ip],
            organization=["kubeherd"],
        )

    async def generate(self, descriptor: CertificateDescriptor) -> Tuple[bytes, bytes]:
        # key generation is CPU bound
        return await asyncio.to_thread(_self_signed, descriptor)

    async def ensure(self) -> None:
        """Generate and store the registry certificate unless already on disk."""
        if await aiofiles.os.path.exists(self.cert_path):
            return
        cert, key = await self.generate(self.descriptor())
        await aiofiles.os.makedirs(self.cert_dir, exist_ok=True)
        async with aiofiles.open(self.cert_path, "wb") as f:
            await f.write(cert)
        async with aiofiles.open(self.key_path, "wb") as f:
            await f.write(key)
        os.chmod(self.key_path, 0o600)
        logger.info("Generated registry certificate for %s", self.registry.domain)

    async def send(self, hosts: Sequence[str]) -> None:
        remote = f"{REMOTE_CERTS_DIR}/{self.registry.endpoint()}/ca.crt"

        async def _send(host: str) -> None:
            await self.executor.copy(host, self.cert_path, remote)

        await fan_out(
            hosts,
            _send,
            max_concurrency=self.max_concurrency,
            label="send registry cert",
        )
