"""
PR Relay

Relays GitHub pull request activity into Slack and keeps each announcement's
reactions in step with the PR's review and merge state.

Packages:
- common: Config, logging, errors, schemas, store and API clients
- ingress: Signature-checked HTTP endpoints that enqueue jobs
- pipeline: Worker-side processing and reaction synchronization
"""

__version__ = "0.1.0"
