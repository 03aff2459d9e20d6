"""Error taxonomy for campaign operations

Each error carries the HTTP status the API layer answers with.
"""
from typing import Optional


class CampaignError(Exception):
    """Base class for all campaign errors"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(CampaignError, ValueError):
    """Bad audience, malformed schedule time, wrong or expired confirmation token"""
    status_code = 400


class NotFound(CampaignError, LookupError):
    """Missing post, or campaign not found for the given post"""
    status_code = 404


class ConfigurationError(CampaignError):
    """Email provider is not configured"""
    status_code = 400


class ProviderError(CampaignError):
    """Network or HTTP failure talking to the email provider"""
    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class RunFailure(CampaignError):
    """A dispatch run could not finish; recorded on the campaign, never re-raised"""
