"""
Provider table for the OAuth connector.

Everything that differs between Google, Slack and Notion lives in a
``ProviderConfig`` entry; the connector itself has no per-provider branches.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

CREDENTIALS_IN_BODY = "body"
CREDENTIALS_BASIC = "basic"


@dataclass
class Grant:
    """Token-exchange result, shaped for the integration store."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    provider_user_id: Optional[str] = None
    provider_email: Optional[str] = None
    provider_data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    display_name: str
    authorize_url: str
    token_url: str
    scopes: List[str]
    client_id_key: str
    client_secret_key: str
    shape_grant: Callable[[Mapping[str, Any]], Grant]
    scope_separator: str = " "
    extra_authorize_params: Mapping[str, str] = field(default_factory=dict)
    credentials: str = CREDENTIALS_IN_BODY
    token_headers: Mapping[str, str] = field(default_factory=dict)
    supports_refresh: bool = False
    profile_url: Optional[str] = None
    # Some providers answer 2xx with an error payload
    body_error: Callable[[Mapping[str, Any]], Optional[str]] = lambda data: None

    def callback_path(self) -> str:
        return f"/api/integrations/{self.name}/callback"


def expires_in_seconds(data: Mapping[str, Any]) -> Optional[int]:
    try:
        value = int(data.get("expires_in") or 0)
    except (TypeError, ValueError):
        return None
    return value or None


def _google_grant(data: Mapping[str, Any]) -> Grant:
    return Grant(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in=expires_in_seconds(data),
        provider_data={
            "scope": data.get("scope"),
            "token_type": data.get("token_type"),
        },
    )


def _slack_grant(data: Mapping[str, Any]) -> Grant:
    team = data.get("team") or {}
    # Bot tokens neither expire nor refresh
    return Grant(
        access_token=data["access_token"],
        provider_user_id=data.get("bot_user_id"),
        provider_data={
            "team_id": team.get("id"),
            "team_name": team.get("name"),
            "scope": data.get("scope"),
            "token_type": data.get("token_type"),
            "authed_user": data.get("authed_user"),
        },
    )


def _slack_error(data: Mapping[str, Any]) -> Optional[str]:
    if data.get("ok") is False:
        return data.get("error") or "slack_error"
    return None


def _notion_grant(data: Mapping[str, Any]) -> Grant:
    owner = data.get("owner") or {}
    person = (owner.get("user") or {}).get("person") or {}
    return Grant(
        access_token=data["access_token"],
        provider_user_id=data.get("bot_id"),
        provider_email=person.get("email"),
        provider_data={
            "workspace_id": data.get("workspace_id"),
            "workspace_name": data.get("workspace_name"),
            "workspace_icon": data.get("workspace_icon"),
            "owner": data.get("owner"),
            "duplicated_template_id": data.get("duplicated_template_id"),
        },
    )


def _notion_error(data: Mapping[str, Any]) -> Optional[str]:
    error = data.get("error")
    return str(error) if error else None


GOOGLE = ProviderConfig(
    name="google",
    display_name="Google",
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    scopes=[
        "https://www.googleapis.com/auth/spreadsheets",
        "https://www.googleapis.com/auth/drive.readonly",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ],
    client_id_key="GOOGLE_CLIENT_ID",
    client_secret_key="GOOGLE_CLIENT_SECRET",
    shape_grant=_google_grant,
    # offline + consent so Google always returns a refresh token
    extra_authorize_params={"access_type": "offline", "prompt": "consent"},
    supports_refresh=True,
    profile_url="https://www.googleapis.com/oauth2/v2/userinfo",
)

SLACK = ProviderConfig(
    name="slack",
    display_name="Slack",
    authorize_url="https://slack.com/oauth/v2/authorize",
    token_url="https://slack.com/api/oauth.v2.access",
    scopes=["chat:write", "channels:read", "users:read"],
    scope_separator=",",
    client_id_key="SLACK_CLIENT_ID",
    client_secret_key="SLACK_CLIENT_SECRET",
    shape_grant=_slack_grant,
    body_error=_slack_error,
)

NOTION = ProviderConfig(
    name="notion",
    display_name="Notion",
    authorize_url="https://api.notion.com/v1/oauth/authorize",
    token_url="https://api.notion.com/v1/oauth/token",
    scopes=[],
    client_id_key="NOTION_CLIENT_ID",
    client_secret_key="NOTION_CLIENT_SECRET",
    shape_grant=_notion_grant,
    extra_authorize_params={"owner": "user"},
    credentials=CREDENTIALS_BASIC,
    token_headers={"Notion-Version": "2022-06-28"},
    body_error=_notion_error,
)

PROVIDERS: Dict[str, ProviderConfig] = {p.name: p for p in (GOOGLE, SLACK, NOTION)}


def get_provider(name: str) -> Optional[ProviderConfig]:
    return PROVIDERS.get((name or "").strip().lower())
