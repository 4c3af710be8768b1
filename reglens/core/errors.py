from __future__ import annotations


class ReglensError(Exception):
    """Base error for reglens."""


class ProviderConfigError(ReglensError):
    """Missing or invalid external provider configuration."""


class StoreUnavailableError(ReglensError):
    """Durable store (counters, prompts, cache, profiles) could not be reached."""


class InvalidQuotaInputError(ReglensError):
    """Rejected quota input such as a negative amount or unknown quota type."""


class PromptNotFoundError(ReglensError):
    """Upgrade prompt does not exist or belongs to another user."""


class EmbeddingServiceError(ReglensError):
    """Embedding microservice request failure."""


class SearchBackendError(ReglensError):
    """Document similarity search request failure."""
