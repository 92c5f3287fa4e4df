"""Deal flow metrics engine: CRM stage histories to canonical-stage flow metrics."""

__version__ = "0.1.0"
