"""Pre-release compliance and security validation.

This module gates a release on independent checks, all of which must pass:
- Secret-leak scan over the Kubernetes manifests
- RBAC over-permission scan over Roles, ClusterRoles and their bindings
- Pod security scan (privileged, root and escalation-capable containers)
- Image vulnerability scan through a pluggable scanner (Trivy by default)

A non-blocking posture check reports WARNING findings for missing
NetworkPolicies, ingresses without TLS, and unpinned image tags.

Findings are always returned, whether the gate passes or fails.
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from rollgate.core.errors import ConfigError


class ValidationSeverity(str, Enum):
    """Severity levels for validation findings."""

    WARNING = "warning"  # Reported, does not block
    ERROR = "error"  # Should be fixed, does not block
    CRITICAL = "critical"  # Blocks the release


@dataclass
class Finding:
    """Represents one compliance or security finding."""

    check: str
    severity: ValidationSeverity
    title: str
    description: str
    recovery_hint: str = ""
    resource: str = ""


@dataclass
class ValidationResult:
    """Result of the compliance gate."""

    findings: list[Finding] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """The gate passes when no CRITICAL finding was produced."""
        return not any(f.severity == ValidationSeverity.CRITICAL for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        return any(f.severity == ValidationSeverity.WARNING for f in self.findings)

    def by_check(self, check: str) -> list[Finding]:
        return [f for f in self.findings if f.check == check]


# =============================================================================
# Manifest loading
# =============================================================================


def load_manifests(directory: Path) -> list[dict[str, Any]]:
    """Load every YAML document under a directory.

    Args:
        directory: Directory containing ``*.yaml`` / ``*.yml`` manifests

    Returns:
        Parsed documents in file-name order (empty documents skipped)

    Raises:
        ConfigError: If the directory does not exist or a file is not valid YAML
    """
    if not directory.is_dir():
        raise ConfigError(
            f"Manifest directory not found: {directory}",
            details="Pass --manifests with a directory of Kubernetes YAML files.",
        )

    documents: list[dict[str, Any]] = []
    files = sorted([*directory.rglob("*.yaml"), *directory.rglob("*.yml")])
    for path in files:
        try:
            with open(path) as f:
                for doc in yaml.safe_load_all(f):
                    if isinstance(doc, dict):
                        doc.setdefault("__source__", str(path.relative_to(directory)))
                        documents.append(doc)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}", details=str(e)) from e

    logger.debug(f"Loaded {len(documents)} manifest documents from {directory}")
    return documents


def _resource_id(doc: dict[str, Any]) -> str:
    kind = doc.get("kind", "Unknown")
    name = (doc.get("metadata") or {}).get("name", "unnamed")
    return f"{kind}/{name}"


# =============================================================================
# Image scanners
# =============================================================================


class ScannerUnavailableError(Exception):
    """The image scanner binary or service could not be used."""


class ImageScanner(ABC):
    """Pluggable image vulnerability scanner."""

    @abstractmethod
    async def scan(self, image_ref: str) -> list[Finding]:
        """Scan an image and return findings.

        Raises:
            ScannerUnavailableError: If the scanner cannot run
        """
        ...


class TrivyImageScanner(ImageScanner):
    """Scan images with the ``trivy`` CLI."""

    SEVERITY_MAP = {
        "CRITICAL": ValidationSeverity.CRITICAL,
        "HIGH": ValidationSeverity.ERROR,
    }

    def __init__(self, binary: str = "trivy", timeout: float = 300.0) -> None:
        self.binary = binary
        self.timeout = timeout

    async def scan(self, image_ref: str) -> list[Finding]:
        if shutil.which(self.binary) is None:
            raise ScannerUnavailableError(f"'{self.binary}' not found on PATH")

        cmd = [
            self.binary,
            "image",
            "--format",
            "json",
            "--quiet",
            "--severity",
            "HIGH,CRITICAL",
            image_ref,
        ]

        def _run() -> subprocess.CompletedProcess[str]:
            return subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout
            )

        try:
            result = await asyncio.to_thread(_run)
        except subprocess.TimeoutExpired as e:
            raise ScannerUnavailableError(
                f"trivy timed out after {self.timeout}s"
            ) from e

        if result.returncode != 0:
            raise ScannerUnavailableError(
                f"trivy exited with {result.returncode}: {result.stderr.strip()}"
            )
        try:
            report = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ScannerUnavailableError(f"Unreadable trivy output: {e}") from e

        return self.parse_report(report, image_ref)

    @classmethod
    def parse_report(cls, report: dict[str, Any], image_ref: str) -> list[Finding]:
        """Convert a trivy JSON report into findings."""
        findings: list[Finding] = []
        for target in report.get("Results") or []:
            for vuln in target.get("Vulnerabilities") or []:
                severity = cls.SEVERITY_MAP.get(str(vuln.get("Severity", "")).upper())
                if severity is None:
                    continue
                vuln_id = vuln.get("VulnerabilityID", "unknown")
                package = vuln.get("PkgName", "unknown")
                fixed = vuln.get("FixedVersion")
                findings.append(
                    Finding(
                        check="image-scan",
                        severity=severity,
                        title=f"{vuln_id} in {package}",
                        description=vuln.get("Title")
                        or f"{vuln_id} affects {package} {vuln.get('InstalledVersion', '')}",
                        recovery_hint=f"Upgrade {package} to {fixed}"
                        if fixed
                        else "No fixed version available; consider a different base image",
                        resource=image_ref,
                    )
                )
        return findings


# =============================================================================
# Validator
# =============================================================================

_SECRET_NAME = re.compile(
    r"(password|passwd|secret|token|api[_-]?key|access[_-]?key|private[_-]?key)",
    re.IGNORECASE,
)
_SAFE_NAME_SUFFIXES = ("hash", "ref", "name", "path", "file")
_SAFE_CONTAINERS = ("valueFrom", "secretKeyRef", "configMapKeyRef", "keyRef", "secretRef")
_AWS_KEY = re.compile(r"\bAKIA[0-9A-Z]{16}\b")
_PEM_HEADER = re.compile(r"-----BEGIN (?:[A-Z]+ )?PRIVATE KEY-----")
_RBAC_ESCALATION_VERBS = frozenset({"escalate", "bind", "impersonate"})


def _is_placeholder(value: str) -> bool:
    return value.startswith("${") or value.startswith("{{")


def _is_secret_name(name: str) -> bool:
    lowered = name.lower()
    if lowered.endswith(_SAFE_NAME_SUFFIXES):
        return False
    return bool(_SECRET_NAME.search(name))


def _walk(node: Any, path: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], str, Any]]:
    """Yield (parent path, key, value) for every mapping entry."""
    if isinstance(node, dict):
        for key, value in node.items():
            yield path, str(key), value
            yield from _walk(value, (*path, str(key)))
    elif isinstance(node, list):
        for item in node:
            yield from _walk(item, path)


_WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet", "Job"})


def _pod_spec(doc: dict[str, Any]) -> dict[str, Any] | None:
    """The pod template spec of a Pod, workload or CronJob manifest."""
    kind = doc.get("kind")
    spec = doc.get("spec") or {}
    if kind == "Pod":
        return spec
    if kind == "CronJob":
        spec = (spec.get("jobTemplate") or {}).get("spec") or {}
    elif kind not in _WORKLOAD_KINDS:
        return None
    template = spec.get("template") or {}
    return template.get("spec") or {}


def image_tag_pinned(image_ref: str) -> bool:
    """Check that an image reference carries a digest or a non-latest tag."""
    if "@sha256:" in image_ref:
        return True
    last_segment = image_ref.rsplit("/", 1)[-1]
    if ":" not in last_segment:
        return False
    return last_segment.rsplit(":", 1)[1] != "latest"


class ComplianceValidator:
    """Runs the compliance gate for one release.

    Performs checks for:
    - Hardcoded secrets in manifests
    - Over-permissive RBAC rules and bindings
    - Privileged or root containers
    - Image vulnerabilities
    - Security posture (non-blocking)
    """

    def __init__(
        self,
        scanner: ImageScanner | None = None,
        *,
        require_image_scan: bool = False,
    ) -> None:
        """Initialize the validator.

        Args:
            scanner: Image scanner (defaults to Trivy)
            require_image_scan: Treat an unavailable scanner as CRITICAL
        """
        self.scanner = scanner if scanner is not None else TrivyImageScanner()
        self.require_image_scan = require_image_scan

    async def validate(
        self, image_ref: str, manifests: list[dict[str, Any]]
    ) -> ValidationResult:
        """Run all checks.

        Args:
            image_ref: Image to be released
            manifests: Parsed Kubernetes manifests

        Returns:
            ValidationResult; ``passed`` is False if any finding is CRITICAL
        """
        result = ValidationResult()
        result.findings.extend(self.check_secrets(manifests))
        result.findings.extend(self.check_rbac(manifests))
        result.findings.extend(self.check_pod_security(manifests))
        result.findings.extend(await self.check_image(image_ref))
        result.findings.extend(self.check_posture(image_ref, manifests))

        logger.info(
            f"Compliance gate for {image_ref}: "
            f"{'passed' if result.passed else 'failed'} "
            f"with {len(result.findings)} finding(s)"
        )
        return result

    # =========================================================================
    # Secret scan
    # =========================================================================

    def check_secrets(self, manifests: list[dict[str, Any]]) -> list[Finding]:
        """Detect literal credentials in manifests."""
        findings: list[Finding] = []
        for doc in manifests:
            resource = _resource_id(doc)
            is_secret_kind = doc.get("kind") == "Secret"

            if is_secret_kind:
                for section in ("data", "stringData"):
                    for key, value in (doc.get(section) or {}).items():
                        if isinstance(value, str) and value and not _is_placeholder(value):
                            findings.append(
                                self._secret_finding(
                                    resource,
                                    f"Secret manifest carries literal value for '{key}'",
                                )
                            )

            for path, key, value in _walk(doc):
                if any(part in _SAFE_CONTAINERS for part in path) or key in _SAFE_CONTAINERS:
                    continue
                if not isinstance(value, str) or not value or _is_placeholder(value):
                    continue

                if _AWS_KEY.search(value):
                    findings.append(
                        self._secret_finding(resource, f"AWS access key id in '{key}'")
                    )
                elif _PEM_HEADER.search(value):
                    findings.append(
                        self._secret_finding(resource, f"Private key material in '{key}'")
                    )
                elif key == "value" and path and path[-1] == "env":
                    continue
                elif is_secret_kind and path in (("data",), ("stringData",)):
                    continue
                elif _is_secret_name(key):
                    findings.append(
                        self._secret_finding(resource, f"Literal value for '{key}'")
                    )

            findings.extend(self._check_env_literals(doc, resource))

        return findings

    def _check_env_literals(self, doc: dict[str, Any], resource: str) -> list[Finding]:
        findings: list[Finding] = []
        for _path, key, value in _walk(doc):
            if key != "env" or not isinstance(value, list):
                continue
            for entry in value:
                if not isinstance(entry, dict):
                    continue
                name = str(entry.get("name", ""))
                literal = entry.get("value")
                if (
                    isinstance(literal, str)
                    and literal
                    and not _is_placeholder(literal)
                    and _is_secret_name(name)
                    and not _AWS_KEY.search(literal)
                    and not _PEM_HEADER.search(literal)
                ):
                    findings.append(
                        self._secret_finding(
                            resource, f"Environment variable '{name}' has a literal value"
                        )
                    )
        return findings

    @staticmethod
    def _secret_finding(resource: str, description: str) -> Finding:
        return Finding(
            check="secret-scan",
            severity=ValidationSeverity.CRITICAL,
            title="Hardcoded secret detected",
            description=description,
            recovery_hint="Move the value into a Secret and reference it with secretKeyRef",
            resource=resource,
        )

    # =========================================================================
    # RBAC scan
    # =========================================================================

    def check_rbac(self, manifests: list[dict[str, Any]]) -> list[Finding]:
        """Detect wildcard and privilege-escalation RBAC grants."""
        findings: list[Finding] = []
        for doc in manifests:
            kind = doc.get("kind")
            resource = _resource_id(doc)

            if kind in ("Role", "ClusterRole"):
                wildcard_severity = (
                    ValidationSeverity.CRITICAL
                    if kind == "ClusterRole"
                    else ValidationSeverity.ERROR
                )
                for rule in doc.get("rules") or []:
                    wildcards = [
                        field_name
                        for field_name in ("verbs", "resources", "apiGroups")
                        if "*" in (rule.get(field_name) or [])
                    ]
                    if wildcards:
                        findings.append(
                            Finding(
                                check="rbac",
                                severity=wildcard_severity,
                                title="Wildcard RBAC grant",
                                description=f"Rule grants '*' in {', '.join(wildcards)}",
                                recovery_hint="List the exact verbs, resources and API groups required",
                                resource=resource,
                            )
                        )
                    escalation = sorted(
                        _RBAC_ESCALATION_VERBS.intersection(rule.get("verbs") or [])
                    )
                    if escalation:
                        findings.append(
                            Finding(
                                check="rbac",
                                severity=ValidationSeverity.ERROR,
                                title="Privilege escalation verbs granted",
                                description=f"Rule grants {', '.join(escalation)}",
                                recovery_hint="Remove escalate/bind/impersonate unless strictly required",
                                resource=resource,
                            )
                        )

            elif kind in ("RoleBinding", "ClusterRoleBinding"):
                role_ref = doc.get("roleRef") or {}
                if role_ref.get("name") == "cluster-admin":
                    findings.append(
                        Finding(
                            check="rbac",
                            severity=ValidationSeverity.CRITICAL,
                            title="Binding to cluster-admin",
                            description=f"{kind} grants the cluster-admin role",
                            recovery_hint="Bind a least-privilege Role instead",
                            resource=resource,
                        )
                    )
        return findings

    # =========================================================================
    # Pod security
    # =========================================================================

    def check_pod_security(self, manifests: list[dict[str, Any]]) -> list[Finding]:
        """Detect privileged, root and escalation-capable containers."""
        findings: list[Finding] = []
        for doc in manifests:
            pod_spec = _pod_spec(doc)
            if pod_spec is None:
                continue
            resource = _resource_id(doc)
            pod_context = pod_spec.get("securityContext") or {}
            containers = [
                *(pod_spec.get("initContainers") or []),
                *(pod_spec.get("containers") or []),
            ]
            for container in containers:
                if not isinstance(container, dict):
                    continue
                name = container.get("name", "unnamed")
                context = container.get("securityContext") or {}

                if context.get("privileged") is True:
                    findings.append(
                        Finding(
                            check="pod-security",
                            severity=ValidationSeverity.CRITICAL,
                            title="Privileged container",
                            description=f"Container '{name}' runs with privileged: true",
                            recovery_hint="Drop privileged mode and grant only the capabilities needed",
                            resource=resource,
                        )
                    )
                run_as_user = context.get("runAsUser", pod_context.get("runAsUser"))
                if run_as_user == 0:
                    findings.append(
                        Finding(
                            check="pod-security",
                            severity=ValidationSeverity.ERROR,
                            title="Container runs as root",
                            description=f"Container '{name}' runs with runAsUser: 0",
                            recovery_hint="Set runAsNonRoot: true and a non-zero runAsUser",
                            resource=resource,
                        )
                    )
                if context.get("allowPrivilegeEscalation") is True:
                    findings.append(
                        Finding(
                            check="pod-security",
                            severity=ValidationSeverity.ERROR,
                            title="Privilege escalation allowed",
                            description=f"Container '{name}' sets allowPrivilegeEscalation: true",
                            recovery_hint="Set allowPrivilegeEscalation: false",
                            resource=resource,
                        )
                    )
        return findings

    # =========================================================================
    # Image scan
    # =========================================================================

    async def check_image(self, image_ref: str) -> list[Finding]:
        """Scan the release image, reporting scanner outages as findings."""
        try:
            return await self.scanner.scan(image_ref)
        except ScannerUnavailableError as e:
            severity = (
                ValidationSeverity.CRITICAL
                if self.require_image_scan
                else ValidationSeverity.WARNING
            )
            logger.warning(f"Image scan unavailable for {image_ref}: {e}")
            return [
                Finding(
                    check="image-scan",
                    severity=severity,
                    title="Image scan unavailable",
                    description=str(e),
                    recovery_hint="Install trivy or configure an image scanner",
                    resource=image_ref,
                )
            ]

    # =========================================================================
    # Posture (non-blocking)
    # =========================================================================

    def check_posture(
        self, image_ref: str, manifests: list[dict[str, Any]]
    ) -> list[Finding]:
        """Report missing security posture as warnings."""
        findings: list[Finding] = []
        kinds = {doc.get("kind") for doc in manifests}

        if manifests and "NetworkPolicy" not in kinds:
            findings.append(
                Finding(
                    check="posture",
                    severity=ValidationSeverity.WARNING,
                    title="No NetworkPolicy defined",
                    description="Pods accept traffic from any source in the cluster",
                    recovery_hint="Add a NetworkPolicy restricting ingress to the app",
                )
            )

        for doc in manifests:
            if doc.get("kind") == "Ingress" and not (doc.get("spec") or {}).get("tls"):
                findings.append(
                    Finding(
                        check="posture",
                        severity=ValidationSeverity.WARNING,
                        title="Ingress without TLS",
                        description="Traffic to this ingress is served over plain HTTP",
                        recovery_hint="Configure spec.tls with a certificate secret",
                        resource=_resource_id(doc),
                    )
                )

        if not image_tag_pinned(image_ref):
            findings.append(
                Finding(
                    check="posture",
                    severity=ValidationSeverity.WARNING,
                    title="Image tag not pinned",
                    description=f"'{image_ref}' uses 'latest' or no tag",
                    recovery_hint="Release an immutable tag or digest",
                    resource=image_ref,
                )
            )
        return findings
