"""Tests for certificate provisioning."""

import ssl
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID

from livedev.certs import (
    CertificateProvisioner,
    build_ssl_context,
    generate_self_signed,
)


def common_name(pair):
    cert = x509.load_pem_x509_certificate(pair.cert)
    return cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


def fake_process(returncode, output=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(output, None))
    return process


def test_self_signed_pair():
    pair = generate_self_signed()
    cert = x509.load_pem_x509_certificate(pair.cert)

    assert common_name(pair) == "localhost"
    assert b"PRIVATE KEY" in pair.key
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert "localhost" in san.get_values_for_type(x509.DNSName)
    assert isinstance(build_ssl_context(pair), ssl.SSLContext)


@pytest.mark.asyncio
async def test_missing_tool_falls_back_to_self_signed(tmp_path, caplog):
    provisioner = CertificateProvisioner(cache_dir=tmp_path / "certs")

    with patch("livedev.certs.shutil.which", return_value=None):
        pair = await provisioner.acquire()

    assert common_name(pair) == "localhost"
    assert not provisioner.cert_path.exists()
    assert "self-signed" in caplog.text


@pytest.mark.asyncio
async def test_failing_tool_falls_back_to_self_signed(tmp_path):
    provisioner = CertificateProvisioner(cache_dir=tmp_path / "certs")

    with patch("livedev.certs.shutil.which", return_value="/usr/bin/mkcert"), patch(
        "livedev.certs.asyncio.create_subprocess_exec",
        AsyncMock(return_value=fake_process(1, b"no CA")),
    ) as spawn:
        pair = await provisioner.acquire()

    spawn.assert_awaited_once()
    assert common_name(pair) == "localhost"


@pytest.mark.asyncio
async def test_tool_issued_certificate_is_used(tmp_path):
    provisioner = CertificateProvisioner(cache_dir=tmp_path / "certs")

    async def run_mkcert(*args, **kwargs):
        provisioner.key_path.write_bytes(b"tool-key")
        provisioner.cert_path.write_bytes(b"tool-cert")
        return fake_process(0)

    with patch("livedev.certs.shutil.which", return_value="/usr/bin/mkcert"), patch(
        "livedev.certs.asyncio.create_subprocess_exec", side_effect=run_mkcert
    ) as spawn:
        pair = await provisioner.acquire()

    args = spawn.call_args[0]
    assert args[:5] == (
        "/usr/bin/mkcert",
        "-key-file",
        str(provisioner.key_path),
        "-cert-file",
        str(provisioner.cert_path),
    )
    assert "localhost" in args
    assert pair.key == b"tool-key"
    assert pair.cert == b"tool-cert"


@pytest.mark.asyncio
async def test_cached_certificate_skips_tool(tmp_path):
    cache = tmp_path / "certs"
    cache.mkdir()
    provisioner = CertificateProvisioner(cache_dir=cache)
    provisioner.key_path.write_bytes(b"cached-key")
    provisioner.cert_path.write_bytes(b"cached-cert")

    with patch("livedev.certs.shutil.which", return_value="/usr/bin/mkcert"), patch(
        "livedev.certs.asyncio.create_subprocess_exec", AsyncMock()
    ) as spawn:
        pair = await provisioner.acquire()

    spawn.assert_not_called()
    assert pair.cert == b"cached-cert"
