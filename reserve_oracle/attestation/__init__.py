"""Reserve audit report attestation"""

from .quorum import AttestationQuorum, report_message

__all__ = ["AttestationQuorum", "report_message"]
