"""Deploy Let's Encrypt certificates into the controller's Java keystore."""
from __future__ import annotations

import logging
import os
import shlex
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .config import TLSConfig
from .layout import StackRoot
from .providers.compose import ComposeError, ComposeProvider
from .templates import RENEWAL_HOOK_TEMPLATE, TemplateEngine

FULLCHAIN_NAME = "fullchain.pem"
PRIVKEY_NAME = "privkey.pem"
P12_NAME = "unifi.p12"
# unifi-data/ is mounted at /config inside the application container.
CONTAINER_CERTS_DIR = "/config/certs"
EXPIRY_WARNING_DAYS = 21

_logger = logging.getLogger(__name__)


class CertificateError(RuntimeError):
    """Raised when certificate material is missing, invalid or cannot be imported."""


@dataclass(frozen=True)
class CertificateSource:
    """Location of a certificate chain and its private key."""

    fullchain: Path
    privkey: Path
    domain: str | None = None

    @classmethod
    def from_live_dir(cls, live_dir: Path, domain: str) -> CertificateSource:
        domain = domain.strip()
        if not domain or "/" in domain:
            raise CertificateError(f"Invalid domain {domain!r}.")
        return cls.from_lineage(Path(live_dir) / domain)

    @classmethod
    def from_lineage(cls, lineage: Path) -> CertificateSource:
        lineage = Path(lineage)
        return cls(
            fullchain=lineage / FULLCHAIN_NAME,
            privkey=lineage / PRIVKEY_NAME,
            domain=lineage.name or None,
        )


@dataclass(slots=True)
class CertificateReport:
    """What was learned about the certificate while deploying it."""

    subject: str
    not_valid_after: datetime
    days_remaining: int
    chain_length: int
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "subject": self.subject,
            "not_valid_after": self.not_valid_after.isoformat(),
            "days_remaining": self.days_remaining,
            "chain_length": self.chain_length,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class DeployResult:
    """Outcome of :meth:`CertificateDeployer.deploy`."""

    source: CertificateSource
    p12_path: Path
    report: CertificateReport
    restarted: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "domain": self.source.domain,
            "fullchain": str(self.source.fullchain),
            "privkey": str(self.source.privkey),
            "p12": str(self.p12_path),
            "restarted": self.restarted,
            "certificate": self.report.to_dict(),
        }


@dataclass(slots=True)
class DeployOutcome:
    """Result of :meth:`CertificateDeployer.deploy_best_effort`."""

    ok: bool
    result: DeployResult | None = None
    error: str | None = None


@dataclass(slots=True)
class _Material:
    certificates: list[x509.Certificate]
    key: pkcs12.PKCS12PrivateKeyTypes
    fullchain_bytes: bytes
    privkey_bytes: bytes


class CertificateDeployer:
    """Copy certificates into the stack, bundle them and import them into the keystore."""

    def __init__(
        self,
        root: StackRoot,
        compose: ComposeProvider,
        tls: TLSConfig,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Bind the deployer to *root* and its compose provider."""
        self.root = root
        self.compose = compose
        self.tls = tls
        self.clock = clock

    def resolve_source(
        self,
        *,
        domain: str | None = None,
        lineage: Path | None = None,
        fullchain: Path | None = None,
        privkey: Path | None = None,
    ) -> CertificateSource:
        """Pick certificate paths from explicit files, a lineage or ``<live_dir>/<domain>``."""
        if fullchain is not None or privkey is not None:
            if fullchain is None or privkey is None:
                raise CertificateError("Provide both --fullchain and --privkey.")
            return CertificateSource(fullchain=Path(fullchain), privkey=Path(privkey), domain=domain)
        if lineage is not None and str(lineage).strip():
            return CertificateSource.from_lineage(Path(lineage))
        if domain:
            return CertificateSource.from_live_dir(self.tls.live_dir, domain)
        raise CertificateError("Set a domain (--domain) or certificate paths to deploy.")

    def deploy(self, source: CertificateSource, *, restart: bool = True) -> DeployResult:
        """Validate *source*, import it under the configured alias and restart the app."""
        material = self._load(source)
        report = self._inspect(material)
        for warning in report.warnings:
            _logger.warning(warning)

        certs_dir = self.root.certs_dir
        try:
            certs_dir.mkdir(parents=True, exist_ok=True)
            _write_bytes(certs_dir / FULLCHAIN_NAME, material.fullchain_bytes, 0o644)
            _write_bytes(certs_dir / PRIVKEY_NAME, material.privkey_bytes, 0o600)
            p12_path = certs_dir / P12_NAME
            _write_bytes(p12_path, self.build_bundle(material), 0o640)
        except OSError as exc:
            raise CertificateError(f"Failed to write certificate files into {certs_dir}: {exc}") from exc

        try:
            self.compose.container_exec(self.keytool_command())
        except ComposeError as exc:
            raise CertificateError(f"Keystore import failed: {exc}") from exc

        restarted = False
        if restart:
            try:
                self.compose.restart(self.compose.app_service)
            except ComposeError as exc:
                raise CertificateError(f"Certificate imported but restart failed: {exc}") from exc
            restarted = True
        _logger.info("Deployed certificate for %s (expires %s)", source.domain, report.not_valid_after)
        return DeployResult(source=source, p12_path=p12_path, report=report, restarted=restarted)

    def deploy_best_effort(self, source: CertificateSource) -> DeployOutcome:
        """Run :meth:`deploy` for renewal hooks; failures are logged, never raised."""
        try:
            return DeployOutcome(ok=True, result=self.deploy(source))
        except CertificateError as exc:
            _logger.error("Certificate deployment failed: %s", exc)
            return DeployOutcome(ok=False, error=str(exc))

    def build_bundle(self, material: _Material) -> bytes:
        """Return the PKCS#12 bundle protected by the configured password."""
        leaf, *chain = material.certificates
        return pkcs12.serialize_key_and_certificates(
            name=self.tls.alias.encode("utf-8"),
            key=material.key,
            cert=leaf,
            cas=chain or None,
            encryption_algorithm=serialization.BestAvailableEncryption(
                self.tls.p12_password.encode("utf-8")
            ),
        )

    def keytool_command(self) -> list[str]:
        """Return the ``keytool`` invocation run inside the application container."""
        return [
            "keytool",
            "-importkeystore",
            "-deststorepass",
            self.tls.keystore_password,
            "-destkeypass",
            self.tls.keystore_password,
            "-destkeystore",
            self.tls.keystore_path,
            "-srckeystore",
            f"{CONTAINER_CERTS_DIR}/{P12_NAME}",
            "-srcstoretype",
            "PKCS12",
            "-srcstorepass",
            self.tls.p12_password,
            "-alias",
            self.tls.alias,
            "-noprompt",
        ]

    def install_renewal_hook(self, templates: TemplateEngine, *, unifictl_bin: str) -> bool:
        """Render the certbot deploy hook; returns True when the file changed."""
        context = {
            "unifictl_bin": shlex.quote(unifictl_bin),
            "stack_root": shlex.quote(str(self.root.path)),
        }
        try:
            return templates.render_to_path(
                RENEWAL_HOOK_TEMPLATE, self.tls.hook_path, context, mode=0o755
            )
        except OSError as exc:
            raise CertificateError(f"Failed to install renewal hook {self.tls.hook_path}: {exc}") from exc

    # ------------------------------------------------------------------
    def _load(self, source: CertificateSource) -> _Material:
        for path in (source.fullchain, source.privkey):
            if not path.is_file():
                raise CertificateError(f"Certificate file {path} not found.")
        try:
            fullchain_bytes = source.fullchain.read_bytes()
            privkey_bytes = source.privkey.read_bytes()
        except OSError as exc:
            raise CertificateError(f"Failed to read certificate material: {exc}") from exc
        try:
            certificates = x509.load_pem_x509_certificates(fullchain_bytes)
        except ValueError as exc:
            raise CertificateError(f"Failed to parse {source.fullchain}: {exc}") from exc
        try:
            key = serialization.load_pem_private_key(privkey_bytes, password=None)
        except (ValueError, TypeError) as exc:
            raise CertificateError(f"Failed to parse {source.privkey}: {exc}") from exc
        return _Material(
            certificates=certificates,
            key=key,  # type: ignore[arg-type]
            fullchain_bytes=fullchain_bytes,
            privkey_bytes=privkey_bytes,
        )

    def _inspect(self, material: _Material) -> CertificateReport:
        leaf = material.certificates[0]
        if not _public_keys_match(leaf, material.key):
            raise CertificateError("Certificate does not match the provided key.")
        not_after = leaf.not_valid_after_utc
        now = self.clock()
        if not_after <= now:
            raise CertificateError(f"Certificate expired on {not_after.isoformat()}.")
        days = (not_after - now).days
        report = CertificateReport(
            subject=leaf.subject.rfc4514_string(),
            not_valid_after=not_after,
            days_remaining=days,
            chain_length=len(material.certificates),
        )
        if days <= EXPIRY_WARNING_DAYS:
            report.warnings.append(
                f"Certificate expires soon ({not_after.isoformat()}, {days} day(s) remaining)."
            )
        return report


def _public_keys_match(cert: x509.Certificate, private_key: pkcs12.PKCS12PrivateKeyTypes) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _write_bytes(path: Path, data: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            os.fchmod(handle.fileno(), mode)
            handle.write(data)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "CertificateDeployer",
    "CertificateError",
    "CertificateReport",
    "CertificateSource",
    "DeployOutcome",
    "DeployResult",
    "P12_NAME",
]
