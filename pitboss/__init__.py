"""
PitBoss — Remediation Governor

Watches the game backend's event log, turns raw lines into classified
issues, advises whether the governed client process should pause or
resume, and remembers which remedies were already tried.
"""

__version__ = "0.1.0"
