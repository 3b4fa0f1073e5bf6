"""
ProofSync: Google Drive uploads of volunteer-hour proof photos.

Credential storage, OAuth token lifecycle and a resilient upload pipeline
with local fallback.
"""

__version__ = "1.0.0"
