"""EchoVault insight engine - goals, patterns, exclusions, burnout."""
from .schemas import InsightsError, InsightsNotFoundError, InsightsValidationError, StoreConflictError
from .store import DocumentStore
