# routes.py
from fastapi import FastAPI
from controller.analysis_controller import analysis_router
from controller.document_controller import document_router
from controller.queue_controller import queue_router


def register_routes(app: FastAPI) -> None:
    """Register & Access control controllers here."""
    app.include_router(analysis_router)
    app.include_router(queue_router)
    app.include_router(document_router)
