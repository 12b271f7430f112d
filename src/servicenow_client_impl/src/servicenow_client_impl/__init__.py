"""Public exports for the ServiceNow client implementation package."""

from servicenow_client_impl.servicenow_impl import (
    ServiceNowClient,
    ServiceNowOAuth,
    register,
)

__all__ = ["ServiceNowClient", "ServiceNowOAuth", "register"]

register()
