"""Agent credential aliases and per-user selection."""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_ENV_VAR = "CLAUDE_CODE_OAUTH_TOKEN"
DEFAULT_ALIAS = "default"


@dataclass
class Credential:
    alias: str
    token: str

    @property
    def masked(self) -> str:
        """Short prefix safe for logs."""
        return f"{self.token[:8]}..." if len(self.token) > 8 else "***"


class CredentialStore:
    """
    Tokens keyed by alias, gathered from config and the environment.

    `<ENV_VAR>` supplies the default alias and `<ENV_VAR>_<alias>` supplies
    named aliases; tokens listed under `credentials.tokens` in the config take
    precedence. Users are mapped to aliases under `credentials.users`.
    """

    def __init__(self, config: Optional[dict] = None, environ: Optional[Mapping[str, str]] = None):
        cred_config = (config or {}).get("credentials", {})
        self.env_var = cred_config.get("env_var", DEFAULT_ENV_VAR)
        self.default_alias = cred_config.get("default_alias", DEFAULT_ALIAS)
        self.user_aliases: dict[str, str] = {
            str(user): str(alias) for user, alias in (cred_config.get("users") or {}).items()
        }

        environ = os.environ if environ is None else environ
        self.tokens: dict[str, str] = {}
        if environ.get(self.env_var):
            self.tokens[DEFAULT_ALIAS] = environ[self.env_var]
        prefix = f"{self.env_var}_"
        for key, value in environ.items():
            if key.startswith(prefix) and value:
                self.tokens[key[len(prefix):].lower()] = value
        for alias, token in (cred_config.get("tokens") or {}).items():
            if token:
                self.tokens[str(alias)] = str(token)

        if not self.tokens:
            logger.warning(f"No agent credentials configured (set {self.env_var} or {prefix}<alias>)")
        else:
            logger.info(f"Loaded {len(self.tokens)} credential alias(es): {', '.join(sorted(self.tokens))}")

    def aliases(self) -> list[str]:
        return sorted(self.tokens)

    def get(self, alias: str) -> Optional[Credential]:
        token = self.tokens.get(alias)
        return Credential(alias=alias, token=token) if token else None

    def for_user(self, user_id: Optional[str]) -> Optional[Credential]:
        """Credential for a chat user: their mapped alias, else the default alias, else the only one."""
        if user_id is not None:
            alias = self.user_aliases.get(str(user_id))
            if alias:
                credential = self.get(alias)
                if credential:
                    return credential
                logger.warning(f"User {user_id} is mapped to unknown credential alias {alias}")
        credential = self.get(self.default_alias)
        if credential:
            return credential
        if len(self.tokens) == 1:
            alias = next(iter(self.tokens))
            return self.get(alias)
        return None

    def alias_for(self, user_id: Optional[str]) -> Optional[str]:
        credential = self.for_user(user_id)
        return credential.alias if credential else None

    def set_user_alias(self, user_id: str, alias: str) -> Optional[Credential]:
        """
        Switch a user to another credential alias (matched case-insensitively).

        Takes effect for commands the user sends from now on; commands already
        queued keep the credential they were queued with.

        Returns:
            The selected credential, or None if no such alias exists
        """
        match = next((a for a in self.tokens if a.lower() == alias.lower()), None)
        if match is None:
            logger.warning(f"User {user_id} asked for unknown credential alias {alias}")
            return None
        self.user_aliases[str(user_id)] = match
        logger.info(f"User {user_id} switched to credential alias {match}")
        return self.get(match)
