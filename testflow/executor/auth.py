"""Authentication of outbound test requests."""

import base64
from collections.abc import MutableMapping

from testflow.models.test import ApiKeyAuth, AuthConfig, BasicAuth, BearerAuth, NoAuth


def apply_auth(
    auth: AuthConfig,
    headers: MutableMapping[str, str],
    params: MutableMapping[str, str],
) -> None:
    """Add the credentials of an auth variant to request headers or parameters."""
    match auth:
        case NoAuth():
            pass
        case BearerAuth(token=token):
            headers["Authorization"] = f"Bearer {token.get_secret_value()}"
        case BasicAuth(username=username, password=password):
            auth_string = f"{username}:{password.get_secret_value()}"
            encoded = base64.b64encode(auth_string.encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {encoded}"
        case ApiKeyAuth(key=key, value=value, location="header"):
            headers[key] = value.get_secret_value()
        case ApiKeyAuth(key=key, value=value, location="query"):
            params[key] = value.get_secret_value()
