"""Infisical secret source implementation."""

import json
import logging
from typing import Dict, Optional, Sequence

import requests

from deploypilot.core.exceptions import SecretFetchError
from deploypilot.core.models import SecretMapping
from deploypilot.integrations.base import ISecretSource

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


class InfisicalSecretSource(ISecretSource):
    """
    Secret source backed by the Infisical raw secrets API.

    Each mapping is fetched with ``GET /api/v3/secrets/raw/{name}``. The
    endpoint is expected to answer JSON, but bare values (``text/plain`` or a
    JSON string) are accepted too. Anything else fails loudly with the
    status code and a preview of the body.
    """

    def __init__(
        self,
        base_url: str,
        service_token: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the Infisical client.

        Args:
            base_url: Infisical server URL
            service_token: Bearer token for the API
            timeout: Per-request timeout in seconds
            session: Optional requests session (shared connection pool)
        """
        self.base_url = (base_url or "").rstrip("/")
        self.service_token = service_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(
        self,
        scope: str,
        environment: str,
        mappings: Sequence[SecretMapping],
    ) -> Dict[str, str]:
        if not self.base_url:
            raise SecretFetchError("Infisical base URL is not configured")

        result: Dict[str, str] = {}
        for mapping in mappings:
            try:
                result[mapping.env_name] = self.fetch_secret(
                    scope, environment, mapping.path, mapping.secret_name
                )
            except SecretFetchError as e:
                raise SecretFetchError(
                    f"Failed to fetch secret {mapping.secret_name} from path "
                    f"{mapping.path}: {e.message}",
                    details=e.details,
                )
        return result

    def fetch_secret(self, scope: str, environment: str, path: str, name: str) -> str:
        """Fetch a single secret value."""
        url = f"{self.base_url}/api/v3/secrets/raw/{name}"
        params = {
            "environment": environment,
            "workspaceSlug": scope,
            "secretPath": path,
            "expandSecretReferences": "true",
        }
        headers = {
            "Authorization": f"Bearer {self.service_token}",
            "Accept": "application/json",
        }

        logger.debug(
            "Fetching secret %s (workspace=%s, environment=%s, path=%s)",
            name,
            scope,
            environment,
            path,
        )

        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise SecretFetchError(f"Failed to send request to Infisical: {e}")

        body = response.text or ""
        if response.status_code != 200:
            logger.error(
                "Infisical API returned status %d for %s: %s",
                response.status_code,
                name,
                body[:PREVIEW_LENGTH],
            )
            raise SecretFetchError(
                f"Infisical API returned status {response.status_code}: {body[:PREVIEW_LENGTH]}",
                details={"status": response.status_code},
            )

        return self._parse_value(response, body)

    @staticmethod
    def _parse_value(response: requests.Response, body: str) -> str:
        content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
        details = {"status": response.status_code, "content_type": content_type}

        if content_type == "text/plain":
            return body

        if content_type in ("application/json", ""):
            try:
                data = json.loads(body)
            except ValueError:
                if content_type == "" and not body.strip():
                    raise SecretFetchError(
                        f"Empty Infisical response with status {response.status_code} "
                        f"(response preview: {body[:PREVIEW_LENGTH]!r})",
                        details=details,
                    )
                if content_type == "":
                    # untyped bodies that are not JSON are treated as bare values
                    return body
                raise SecretFetchError(
                    f"Failed to decode Infisical response: invalid JSON "
                    f"(response preview: {body[:PREVIEW_LENGTH]})",
                    details=details,
                )

            if isinstance(data, str):
                return data
            if isinstance(data, dict):
                secret = data.get("secret")
                if isinstance(secret, dict):
                    for key in ("secretValue", "value"):
                        if isinstance(secret.get(key), str):
                            return secret[key]
                if isinstance(data.get("value"), str):
                    return data["value"]

            raise SecretFetchError(
                f"Unexpected Infisical response shape (response preview: {body[:PREVIEW_LENGTH]})",
                details=details,
            )

        raise SecretFetchError(
            f"Unexpected Infisical content type {content_type!r} with status "
            f"{response.status_code} (response preview: {body[:PREVIEW_LENGTH]})",
            details=details,
        )
