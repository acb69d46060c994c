"""
Per-run execution context and output resolution.

The context owns the variable namespace of exactly one run. Steps write their
results under their outputAs key; loops bind their item and index variables
for the duration of the loop only.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from automation_engine.template.resolver import resolve

logger = logging.getLogger(__name__)

BUILT_IN_KEYS = frozenset({"user", "trigger", "credential", "workflowId"})

# Platform names whose bare key may hold a credential
CREDENTIAL_PLATFORMS = frozenset({
    "openai", "anthropic", "youtube", "slack", "twitter", "github", "reddit",
})

_MISSING = object()


class CredentialAliases:
    """
    Makes one stored credential reachable under every name a module may use.

    Maps module/platform name -> credential ids, in preference order.
    """

    DEFAULT_TABLE: dict[str, tuple[str, ...]] = {
        "youtube": ("youtube_apikey", "youtube_api_key", "youtube"),
        "twitter": ("twitter_oauth2", "twitter_oauth", "twitter"),
        "twitter-oauth": ("twitter_oauth2", "twitter_oauth", "twitter"),
        "github": ("github_oauth", "github"),
        "google-sheets": ("googlesheets", "googlesheets_oauth"),
        "googlesheets": ("googlesheets", "googlesheets_oauth"),
        "google-calendar": ("googlecalendar", "googlecalendar_serviceaccount"),
        "googlecalendar": ("googlecalendar", "googlecalendar_serviceaccount"),
        "notion": ("notion_oauth", "notion"),
        "airtable": ("airtable_oauth", "airtable"),
        "hubspot": ("hubspot_oauth", "hubspot"),
        "salesforce": ("salesforce_jwt", "salesforce"),
        "slack": ("slack_oauth", "slack"),
        "discord": ("discord_oauth", "discord"),
        "stripe": ("stripe_connect", "stripe"),
        "rapidapi": ("rapidapi_api_key", "rapidapi"),
        "openai": ("openai_api_key", "openai"),
        "anthropic": ("anthropic_api_key", "anthropic"),
        "openrouter": ("openrouter_api_key", "openrouter"),
    }

    def __init__(self, table: Optional[dict[str, tuple[str, ...]]] = None):
        self.table = dict(self.DEFAULT_TABLE if table is None else table)

    def names(self) -> set[str]:
        """Every platform name and credential id in the table."""
        names = set(self.table)
        for ids in self.table.values():
            names.update(ids)
        return names

    def expand(self, credentials: dict[str, Any]) -> dict[str, Any]:
        """
        Copy of the credentials with aliases filled in.

        For each platform, the first credential id present is made available
        under the platform name and every other id. Existing keys are kept.
        """
        expanded = dict(credentials)
        for platform, ids in self.table.items():
            found = next((cid for cid in ids if expanded.get(cid)), None)
            if found is None:
                continue
            for alias in (platform, *ids):
                if not expanded.get(alias):
                    expanded[alias] = expanded[found]
        return expanded


@dataclass
class ExecutionContext:
    """Variable namespace of one run."""

    variables: dict[str, Any]
    workflow_id: str
    run_id: str
    user_id: str
    credential_keys: set[str] = field(default_factory=set)

    def set_output(self, key: str, value: Any) -> None:
        self.variables[key] = value

    @contextmanager
    def scoped(self, bindings: dict[str, Any]) -> Iterator["ExecutionContext"]:
        """
        Bind loop variables over the shared namespace.

        Previous values (or their absence) are restored on exit, including
        when the body raises.
        """
        saved = {key: self.variables.get(key, _MISSING) for key in bindings}
        self.variables.update(bindings)
        try:
            yield self
        finally:
            for key, previous in saved.items():
                if previous is _MISSING:
                    self.variables.pop(key, None)
                else:
                    self.variables[key] = previous

    def rebind(self, bindings: dict[str, Any]) -> None:
        """Update loop variables inside an active scope."""
        self.variables.update(bindings)


def build_context(
    workflow_id: str,
    run_id: str,
    user_id: str,
    credentials: dict[str, Any],
    trigger_data: Optional[dict[str, Any]] = None,
) -> ExecutionContext:
    """
    Allocate the context of a new run.

    Credentials are exposed as {{user.x}}, {{credential.x}} and {{x}}.
    """
    variables: dict[str, Any] = {
        "workflowId": workflow_id,
        "user": {"id": user_id, **credentials},
        "credential": credentials,
        "trigger": trigger_data or {},
    }
    for key, value in credentials.items():
        variables.setdefault(key, value)

    return ExecutionContext(
        variables=variables,
        workflow_id=workflow_id,
        run_id=run_id,
        user_id=user_id,
        credential_keys=set(credentials),
    )


def is_credential_key(key: str, alias_names: set[str], credential_keys: set[str]) -> bool:
    lowered = key.lower()
    return (
        "_apikey" in lowered
        or "_api_key" in lowered
        or lowered in CREDENTIAL_PLATFORMS
        or key in alias_names
        or key in credential_keys
    )


def resolve_output(
    context: ExecutionContext,
    return_value: Any = None,
    alias_names: Optional[set[str]] = None,
) -> Any:
    """
    Final output of a run.

    A declared returnValue is resolved against the final variables. Otherwise
    the step outputs are returned, leaving out built-ins and anything that
    looks like a credential; if nothing is left, all variables are returned.
    """
    if return_value is not None:
        return resolve(return_value, context.variables)

    aliases = alias_names if alias_names is not None else CredentialAliases().names()
    outputs = {
        key: value
        for key, value in context.variables.items()
        if key not in BUILT_IN_KEYS
        and not is_credential_key(key, aliases, context.credential_keys)
    }
    if outputs:
        return outputs

    logger.debug(f"Run {context.run_id} produced no step outputs, returning all variables")
    return context.variables
