"""Core utilities for the Kobber CRM lead tracker."""

from .config import AppConfig, configure_logging, load_config
from .models import Opportunity, OpportunityNotFoundError, OpportunityValidationError
from .repositories import Database, OpportunityRepository, UserRepository
from .security import AuthError, AuthService, LoginThrottle, PasswordHasher, SessionUser
from .lookup import DuplicateCustomerLookup

__all__ = [
    "AppConfig",
    "load_config",
    "configure_logging",
    "Opportunity",
    "OpportunityNotFoundError",
    "OpportunityValidationError",
    "Database",
    "OpportunityRepository",
    "UserRepository",
    "PasswordHasher",
    "LoginThrottle",
    "AuthError",
    "AuthService",
    "SessionUser",
    "DuplicateCustomerLookup",
]
