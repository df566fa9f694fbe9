"""FastAPI dependencies for the clients built at startup.

The gateway, mailer and realtime manager live on ``app.state`` (set by the
lifespan in ``main.py``); tests replace them through ``dependency_overrides``.
"""

from fastapi import Request

from agrolink.infra.instamojo import InstamojoClient
from agrolink.services.email_service import Mailer
from agrolink.services.realtime import ConnectionManager


def get_gateway(request: Request) -> InstamojoClient:
    return request.app.state.gateway


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_realtime(request: Request) -> ConnectionManager:
    return request.app.state.realtime
