"""FastAPI dependencies resolving the services built by the app factory."""
from fastapi import Request

from .services.notification_hub import NotificationHub
from .services.workflow import ValidationWorkflowService


def get_workflow(request: Request) -> ValidationWorkflowService:
    return request.app.state.workflow


def get_hub(request: Request) -> NotificationHub:
    return request.app.state.hub
