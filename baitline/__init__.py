"""Building blocks for phishing-awareness campaigns: recipients, scheduling, mail delivery, report monitoring, WSGI middleware and restricted outbound connections."""

__version__ = "0.1.0"