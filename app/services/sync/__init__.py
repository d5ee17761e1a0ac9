"""
Twizzit roster sync.

Key components:
- Reconcilers: Map organizations, groups and contacts onto clubs, teams and players
- Orchestrator: Per-configuration run lock and sync history
- Service: Entry points (credentials, sync, preview, history, config)

Import the entry points from ``app.services.sync.service``.
"""
