"""Repository handover service.

Hands a sold repository from seller to buyer:
collaborator grant → review window → ownership transfer → escrow release.

Modules:
- config: pydantic-settings configuration (HANDOVER_ prefix)
- crypto: seller token decryption
- github: GitHub repository access client
- transfers: lifecycle engine, stores, timeline
- events: event emission and Prometheus metrics
- notifications: notification sinks
- sweep: periodic automatic transfer driver
- main: FastAPI application
"""
