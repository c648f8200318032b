"""
runway.integrations - External Collaborator Layer
===================================================

Adapters for the systems Runway drives but does not own. Each one sits
behind an interface so implementations can be swapped (real or scripted).

Sub-packages:
    executor/ - Runs a job's steps (local subprocess, scripted)
"""

__all__: list[str] = []
