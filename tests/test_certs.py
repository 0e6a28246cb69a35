"""Tests for certificate deployment into the controller keystore."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from unifictl.certs import CertificateDeployer, CertificateError, CertificateSource
from unifictl.config import TLSConfig
from unifictl.templates import TemplateEngine

NOW = datetime(2026, 6, 1, tzinfo=UTC)


def _key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _certificate(key: rsa.RSAPrivateKey, *, days: int, name: str = "unifi.example.com") -> x509.Certificate:
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=30))
        .not_valid_after(NOW + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )


def _write_lineage(
    live_dir: Path,
    domain: str = "unifi.example.com",
    *,
    days: int = 80,
    mismatched: bool = False,
) -> Path:
    key = _key()
    cert = _certificate(_key() if mismatched else key, days=days)
    lineage = live_dir / domain
    lineage.mkdir(parents=True)
    (lineage / "fullchain.pem").write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    (lineage / "privkey.pem").write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    return lineage


@pytest.fixture()
def tls(tmp_path: Path) -> TLSConfig:
    """Return TLS settings pointing at a temporary live directory and hook path."""
    return TLSConfig(live_dir=tmp_path / "live", hook_path=tmp_path / "hooks" / "unifictl-deploy.sh")


def _deployer(stack_root, fake_compose, tls: TLSConfig) -> CertificateDeployer:  # type: ignore[no-untyped-def]
    return CertificateDeployer(stack_root, fake_compose, tls, clock=lambda: NOW)


def test_resolve_source_precedence(stack_root, fake_compose, tls: TLSConfig, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    """Explicit files win over a lineage, which wins over the domain."""
    deployer = _deployer(stack_root, fake_compose, tls)

    explicit = deployer.resolve_source(
        domain="d", lineage=tmp_path / "x", fullchain=tmp_path / "f.pem", privkey=tmp_path / "k.pem"
    )
    assert explicit.fullchain == tmp_path / "f.pem"
    lineage = deployer.resolve_source(domain="d", lineage=tmp_path / "live" / "renewed.example")
    assert lineage.domain == "renewed.example"
    by_domain = deployer.resolve_source(domain="unifi.example.com")
    assert by_domain.privkey == tls.live_dir / "unifi.example.com" / "privkey.pem"

    with pytest.raises(CertificateError, match="both"):
        deployer.resolve_source(fullchain=tmp_path / "f.pem")
    with pytest.raises(CertificateError, match="domain"):
        deployer.resolve_source()
    with pytest.raises(CertificateError, match="Invalid domain"):
        CertificateSource.from_live_dir(tls.live_dir, "../etc")


def test_deploy_imports_and_restarts(stack_root, fake_compose, tls: TLSConfig) -> None:  # type: ignore[no-untyped-def]
    """Files are copied, bundled, imported under the alias and the app restarts."""
    _write_lineage(tls.live_dir)
    deployer = _deployer(stack_root, fake_compose, tls)

    result = deployer.deploy(deployer.resolve_source(domain="unifi.example.com"))

    certs_dir = stack_root.certs_dir
    assert (certs_dir / "fullchain.pem").exists()
    assert (certs_dir / "privkey.pem").stat().st_mode & 0o777 == 0o600
    key, cert, _chain = pkcs12.load_key_and_certificates(
        result.p12_path.read_bytes(), tls.p12_password.encode("utf-8")
    )
    assert key is not None and cert is not None
    assert result.report.days_remaining == 80
    assert result.report.warnings == []
    assert result.restarted is True
    assert fake_compose.calls == [
        ("container_exec", *deployer.keytool_command()),
        ("restart", "unifi-network"),
    ]


def test_keytool_command_uses_configured_alias(stack_root, fake_compose, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    """The import targets the container keystore with the configured passwords."""
    tls = TLSConfig(live_dir=tmp_path, alias="custom", keystore_password="ks", p12_password="pp")
    command = _deployer(stack_root, fake_compose, tls).keytool_command()

    assert command[:2] == ["keytool", "-importkeystore"]
    assert command[command.index("-alias") + 1] == "custom"
    assert command[command.index("-deststorepass") + 1] == "ks"
    assert command[command.index("-srcstorepass") + 1] == "pp"
    assert command[command.index("-srckeystore") + 1] == "/config/certs/unifi.p12"


def test_deploy_without_restart(stack_root, fake_compose, tls: TLSConfig) -> None:  # type: ignore[no-untyped-def]
    """--no-restart imports without restarting."""
    lineage = _write_lineage(tls.live_dir)
    deployer = _deployer(stack_root, fake_compose, tls)

    result = deployer.deploy(CertificateSource.from_lineage(lineage), restart=False)

    assert result.restarted is False
    assert [call[0] for call in fake_compose.calls] == ["container_exec"]


def test_mismatched_key_is_rejected(stack_root, fake_compose, tls: TLSConfig) -> None:  # type: ignore[no-untyped-def]
    """A key that does not match the certificate never reaches the keystore."""
    lineage = _write_lineage(tls.live_dir, mismatched=True)
    deployer = _deployer(stack_root, fake_compose, tls)

    with pytest.raises(CertificateError, match="does not match"):
        deployer.deploy(CertificateSource.from_lineage(lineage))
    assert fake_compose.calls == []
    assert not stack_root.certs_dir.exists()


def test_expiry_checks(stack_root, fake_compose, tls: TLSConfig) -> None:  # type: ignore[no-untyped-def]
    """Expired certificates fail; ones close to expiry deploy with a warning."""
    soon = _write_lineage(tls.live_dir, "soon.example", days=10)
    expired = _write_lineage(tls.live_dir, "old.example", days=-2)
    deployer = _deployer(stack_root, fake_compose, tls)

    result = deployer.deploy(CertificateSource.from_lineage(soon))
    assert any("expires soon" in warning for warning in result.report.warnings)
    with pytest.raises(CertificateError, match="expired"):
        deployer.deploy(CertificateSource.from_lineage(expired))


def test_missing_files(stack_root, fake_compose, tls: TLSConfig) -> None:  # type: ignore[no-untyped-def]
    """Absent material is reported with the path."""
    deployer = _deployer(stack_root, fake_compose, tls)

    with pytest.raises(CertificateError, match="not found"):
        deployer.deploy(CertificateSource.from_live_dir(tls.live_dir, "absent.example"))


def test_best_effort_never_raises(stack_root, fake_compose, tls: TLSConfig) -> None:  # type: ignore[no-untyped-def]
    """Renewal-hook deployments report failure instead of raising."""
    lineage = _write_lineage(tls.live_dir)
    fake_compose.fail.add("container_exec")
    deployer = _deployer(stack_root, fake_compose, tls)

    outcome = deployer.deploy_best_effort(CertificateSource.from_lineage(lineage))

    assert outcome.ok is False
    assert outcome.error is not None and "Keystore import failed" in outcome.error


def test_install_renewal_hook(stack_root, fake_compose, tls: TLSConfig) -> None:  # type: ignore[no-untyped-def]
    """The hook is executable, idempotent and calls back into unifictl."""
    deployer = _deployer(stack_root, fake_compose, tls)
    engine = TemplateEngine.with_overrides(None)

    assert deployer.install_renewal_hook(engine, unifictl_bin="/usr/local/bin/unifictl") is True
    assert deployer.install_renewal_hook(engine, unifictl_bin="/usr/local/bin/unifictl") is False

    content = tls.hook_path.read_text(encoding="utf-8")
    assert tls.hook_path.stat().st_mode & 0o777 == 0o755
    assert f"/usr/local/bin/unifictl --root {stack_root.path} cert deploy --from-hook" in content
    assert '"${RENEWED_LINEAGE:-}"' in content
    assert content.rstrip().endswith("|| true")
