"""TLS certificate provisioning for HTTPS mode.

Prefers a certificate issued by `mkcert`, which the local machine trusts,
and falls back to a self-signed pair generated in-process. Acquisition
always yields a usable pair; every failure along the way is recoverable.
"""

import asyncio
import datetime
import ipaddress
import logging
import pathlib
import shutil
import ssl
import tempfile
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger(__name__)

CA_TOOL = "mkcert"
CERT_HOSTS = ("localhost", "127.0.0.1", "::1")
KEY_FILENAME = "localhost-key.pem"
CERT_FILENAME = "localhost-cert.pem"
SELF_SIGNED_DAYS = 365


def default_cache_dir() -> pathlib.Path:
    return pathlib.Path.home() / ".livedev" / "certs"


@dataclass(frozen=True)
class CertificatePair:
    key: bytes
    cert: bytes


def generate_self_signed(common_name: str = "localhost") -> CertificatePair:
    """Generate a self-signed RSA certificate for local development."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "livedev"),
        ]
    )
    alt_names = [x509.DNSName(common_name)]
    for host in CERT_HOSTS:
        try:
            alt_names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            continue

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=SELF_SIGNED_DAYS))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    return CertificatePair(
        key=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        cert=cert.public_bytes(serialization.Encoding.PEM),
    )


def build_ssl_context(pair: CertificatePair) -> ssl.SSLContext:
    """Create a server-side SSL context from an in-memory PEM pair."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    # load_cert_chain only reads from files
    with tempfile.TemporaryDirectory(prefix="livedev-tls-") as tmpdir:
        cert_path = pathlib.Path(tmpdir) / CERT_FILENAME
        key_path = pathlib.Path(tmpdir) / KEY_FILENAME
        cert_path.write_bytes(pair.cert)
        key_path.write_bytes(pair.key)
        key_path.chmod(0o600)
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    return context


class CertificateProvisioner:
    """Acquires a key/certificate pair, caching tool-issued certificates on disk."""

    def __init__(self, cache_dir: Optional[pathlib.Path] = None, tool: str = CA_TOOL):
        self.cache_dir = pathlib.Path(cache_dir) if cache_dir else default_cache_dir()
        self.tool = tool
        self.key_path = self.cache_dir / KEY_FILENAME
        self.cert_path = self.cache_dir / CERT_FILENAME

    def _cached(self) -> bool:
        return self.key_path.is_file() and self.cert_path.is_file()

    async def _run_tool(self, tool_path: str) -> bool:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create certificate cache {self.cache_dir}: {e}")
            return False

        if self._cached():
            logger.info(f"Using cached {self.tool} certificate from {self.cache_dir}")
            return True

        logger.info(f"Generating {self.tool} certificate in {self.cache_dir}")
        try:
            process = await asyncio.create_subprocess_exec(
                tool_path,
                "-key-file",
                str(self.key_path),
                "-cert-file",
                str(self.cert_path),
                *CERT_HOSTS,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await process.communicate()
        except OSError as e:
            logger.warning(f"Could not run {self.tool}: {e}")
            return False

        if process.returncode != 0:
            text = output.decode(errors="replace").strip() if output else ""
            logger.warning(
                f"{self.tool} exited with status {process.returncode}: {text}"
            )
            return False
        return True

    def _read_cached(self) -> Optional[CertificatePair]:
        try:
            return CertificatePair(
                key=self.key_path.read_bytes(), cert=self.cert_path.read_bytes()
            )
        except OSError as e:
            logger.warning(f"Could not read cached certificate: {e}")
            return None

    async def acquire(self) -> CertificatePair:
        """Return a usable pair. Never raises."""
        try:
            tool_path = shutil.which(self.tool)
        except OSError as e:
            logger.debug(f"Could not look up {self.tool}: {e}")
            tool_path = None

        if tool_path:
            if not await self._run_tool(tool_path):
                logger.info("Falling back to a self-signed certificate")
        else:
            logger.info(f"{self.tool} is not installed")

        if self._cached():
            pair = self._read_cached()
            if pair and pair.key and pair.cert:
                logger.info(f"Using trusted local certificate from {self.cache_dir}")
                return pair

        logger.warning(
            f"Using a self-signed certificate; browsers will warn about it. "
            f"Install {self.tool} for a trusted one."
        )
        return generate_self_signed()
