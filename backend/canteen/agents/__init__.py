from __future__ import annotations

from .supervisor import EXTENSION_KEY, AgentCredentials, AgentSupervisor, AgentUnavailableError, PrintAck

__all__ = ["EXTENSION_KEY", "AgentCredentials", "AgentSupervisor", "AgentUnavailableError", "PrintAck", "get_supervisor"]


def get_supervisor(app=None) -> AgentSupervisor | None:
    if app is None:
        from flask import current_app

        app = current_app
    return app.extensions.get(EXTENSION_KEY)
