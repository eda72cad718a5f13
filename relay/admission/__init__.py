"""
Payment-gated event admission.

This package decides whether events submitted to the relay are stored,
rejected, or held until a Lightning charge is paid.

Key components:
- engine: admission decisions (accept / reject / pending payment)
- validators: auction and bid structural checks
- ledger: pending charges and the events they hold
- webhook: payment provider callbacks that release paid events
- sweeper: expiry of charges that never get a callback
- audit: JSON lines audit trail for payment reconciliation

Configuration is loaded from environment variables via relay.core.config.
"""

__version__ = "0.1.0"
