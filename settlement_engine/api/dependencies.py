"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session
from settlement_engine.infrastructure.clients.directory import MemberDirectoryClient
from settlement_engine.infrastructure.clients.processor import PaymentProcessorClient
from settlement_engine.infrastructure.database.session import get_db
from settlement_engine.infrastructure.realtime.notifier import RealtimeNotifier
from settlement_engine.services.coordinator import SettlementCoordinator


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_processor_client() -> PaymentProcessorClient:
    """Provide payment processor client instance"""
    return PaymentProcessorClient()


def get_directory_client() -> MemberDirectoryClient:
    """Provide member directory client instance"""
    return MemberDirectoryClient()


def get_notifier(request: Request) -> RealtimeNotifier:
    """Notifier is scoped to the app instance, not a module global"""
    return request.app.state.notifier


def get_coordinator(
    db: Session = Depends(get_db),
    processor: PaymentProcessorClient = Depends(get_processor_client),
    notifier: RealtimeNotifier = Depends(get_notifier),
) -> SettlementCoordinator:
    return SettlementCoordinator(db, processor, notifier)
