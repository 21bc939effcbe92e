"""Sanctuary Service - FastAPI application for agent identity, backups and trust."""

from .main import create_app, run_all_cleanup
from .database import SanctuaryDb

__all__ = ["create_app", "run_all_cleanup", "SanctuaryDb"]
