"""Authorizers that hand out access tokens."""

from ..utils.config import AppConfig
from .errors import AuthorizationError
from .models import ServerInfo, ServerTarget


class EnvTokenAuthorizer:
    """Use a pre-provisioned access token from configuration.

    Obtaining the token (OAuth in a browser) happens outside vpnflow.
    """

    def __init__(self, config: AppConfig):
        self.config = config

    async def authorize(self, target: ServerTarget, server_info: ServerInfo) -> str:
        if not self.config.access_token:
            raise AuthorizationError(
                f"No access token configured for {target.api_base_url}.\n"
                "Set VPNFLOW_ACCESS_TOKEN in the environment or a .env file."
            )
        return self.config.access_token
