"""Expose ORM models."""
from .agent import Agent, AgentStatus
from .call import CallAnalysis, CallRecord, CallStatus
from .idempotency import IdempotencyKey
from .phone_assignment import AssignmentStatus, AssignmentType, PhoneAssignment
from .task import Task, TaskKind, TaskState
from .tenant import BookingCredential, BookingEnvironment, Tenant, TenantStatus, User, UserRole

__all__ = [
    "Agent",
    "AgentStatus",
    "AssignmentStatus",
    "AssignmentType",
    "BookingCredential",
    "BookingEnvironment",
    "CallAnalysis",
    "CallRecord",
    "CallStatus",
    "IdempotencyKey",
    "PhoneAssignment",
    "Task",
    "TaskKind",
    "TaskState",
    "Tenant",
    "TenantStatus",
    "User",
    "UserRole",
]
