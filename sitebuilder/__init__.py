"""
Sitebuilder - Build Pipeline Orchestration Engine

Turns a queued deployment request into a published static site.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- config: Environment-driven configuration
- storage: Redis connection management
- api: Shared data models
- sandbox: Command validation and subprocess execution
- executor: Docker and Kubernetes build backends
- artifacts: Object storage for build output
- queue: Priority build queue and dispatch loop
- deployments: Deployment status/log sink and project reader
- notifications: Best-effort build notifications
- worker: Pipeline state machine
"""

__version__ = "1.0.0"
