"""
Certificate Rendering

Turning a certificate record into a document is a collaborator concern.
The service only depends on the CertificateRenderer protocol; the default
MarkdownRenderer is a pure function of the record and its audit trail.
"""

from typing import Optional, Protocol, Sequence

from ..schemas import AuditLogEntry, Certificate


class CertificateRenderer(Protocol):
    media_type: str

    def render(
        self,
        certificate: Certificate,
        audit: Sequence[AuditLogEntry] = (),
        hash_valid: Optional[bool] = None,
    ) -> str:
        ...


class MarkdownRenderer:
    """Plain Markdown rendering, suitable for printing or archiving."""

    media_type = "text/markdown"

    def render(self, certificate, audit=(), hash_valid=None) -> str:
        c = certificate
        lines = [
            f"# Certificate: {c.subject_name}",
            "",
            f"**Status:** {c.status.value.upper()}",
            "",
            "| Field | Value |",
            "|---|---|",
            f"| Subject ID | {c.subject_id} |",
            f"| Version | {c.version} |",
            f"| Program | {c.program} |",
            f"| Credential Value | {c.credential_display} |",
            f"| Issuing Authority | {c.issuing_authority} |",
            f"| Issued By | `{c.issuer_address}` |",
            f"| Issued At | {c.issuance_time.isoformat()} |",
            f"| Certificate Hash | `{c.cert_hash}` |",
        ]
        if c.is_revoked:
            lines.append(f"| Revocation Reason | {c.revocation_reason} |")
        if hash_valid is not None:
            lines.append(f"| Hash Check | {'PASS' if hash_valid else 'FAIL'} |")

        if audit:
            lines.extend(["", "## History", ""])
            for entry in audit:
                line = (
                    f"- {entry.timestamp.isoformat()} **{entry.action.value}** "
                    f"by `{entry.actor_address}` (tx `{entry.ledger_tx_id}`)"
                )
                if entry.reason:
                    line += f": {entry.reason}"
                lines.append(line)

        lines.extend([
            "",
            "---",
            "",
            "Verify this certificate by looking up its hash in the registry.",
            "",
        ])
        return "\n".join(lines)
