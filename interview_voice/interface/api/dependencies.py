from fastapi import Request

from ...application.sessions import SessionManager


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager
