from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Scope(str, Enum):
    ALL = "all"
    SELF = "self"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class Resource(str, Enum):
    PROFILE = "profile"
    USER = "user"
    CHATBOT = "chatbot"
    DOCUMENT = "document"
    LLM_CONFIG = "llm_config"
    ROLE = "role"
    DASHBOARD = "dashboard"
    CHAT = "chat"
    PLAN = "plan"
    ADMIN_STATS = "admin_stats"
    SUBSCRIPTION = "subscription"
    CONTACT_US = "contact_us"
    HELP = "help"


@dataclass(frozen=True)
class PermissionKey:
    # Identify a catalog entry independent of its storage id.
    action: Action
    resource: Resource
    scope: Scope

    @classmethod
    def parse(cls, action: str, resource: str, scope: str) -> "PermissionKey":
        return cls(Action(action), Resource(resource), Scope(scope))

    def __str__(self) -> str:
        return f"{self.action.value}:{self.resource.value}:{self.scope.value}"


@dataclass(frozen=True)
class CatalogEntry:
    key: PermissionKey
    description: str


def _entry(action: Action, resource: Resource, scope: Scope, description: str) -> CatalogEntry:
    return CatalogEntry(key=PermissionKey(action, resource, scope), description=description)


A, R, S = Action, Resource, Scope

PERMISSION_CATALOG: tuple[CatalogEntry, ...] = (
    # Self-service
    _entry(A.READ, R.PROFILE, S.SELF, "Read own profile"),
    _entry(A.UPDATE, R.PROFILE, S.SELF, "Update own profile"),
    _entry(A.READ, R.DASHBOARD, S.SELF, "Read own dashboard"),
    _entry(A.CREATE, R.CHATBOT, S.SELF, "Create own chatbot"),
    _entry(A.READ, R.CHATBOT, S.SELF, "Read own chatbot"),
    _entry(A.UPDATE, R.CHATBOT, S.SELF, "Update own chatbot"),
    _entry(A.DELETE, R.CHATBOT, S.SELF, "Delete own chatbot"),
    _entry(A.CREATE, R.DOCUMENT, S.SELF, "Upload own document"),
    _entry(A.READ, R.DOCUMENT, S.SELF, "Read own document"),
    _entry(A.UPDATE, R.DOCUMENT, S.SELF, "Update own document"),
    _entry(A.DELETE, R.DOCUMENT, S.SELF, "Delete own document"),
    _entry(A.CREATE, R.CHAT, S.SELF, "Start a chat"),
    _entry(A.READ, R.CHAT, S.SELF, "Read own chats"),
    _entry(A.UPDATE, R.CHAT, S.SELF, "Update own chats"),
    _entry(A.DELETE, R.CHAT, S.SELF, "Delete own chats"),
    _entry(A.CREATE, R.HELP, S.SELF, "Open a help request"),
    _entry(A.READ, R.HELP, S.SELF, "Read own help requests"),
    _entry(A.UPDATE, R.HELP, S.SELF, "Update own help requests"),
    _entry(A.READ, R.SUBSCRIPTION, S.SELF, "Read own subscriptions"),
    _entry(A.DELETE, R.SUBSCRIPTION, S.SELF, "Cancel own subscription"),
    _entry(A.CREATE, R.LLM_CONFIG, S.SELF, "Create own LLM configuration"),
    _entry(A.READ, R.LLM_CONFIG, S.SELF, "Read own LLM configuration"),
    _entry(A.UPDATE, R.LLM_CONFIG, S.SELF, "Update own LLM configuration"),
    _entry(A.DELETE, R.LLM_CONFIG, S.SELF, "Delete own LLM configuration"),
    # Administration
    _entry(A.CREATE, R.USER, S.ALL, "Create any user"),
    _entry(A.READ, R.USER, S.ALL, "Read any user"),
    _entry(A.UPDATE, R.USER, S.ALL, "Update any user"),
    _entry(A.DELETE, R.USER, S.ALL, "Delete any user"),
    _entry(A.READ, R.DASHBOARD, S.ALL, "Read the admin dashboard"),
    _entry(A.CREATE, R.ROLE, S.ALL, "Create roles"),
    _entry(A.READ, R.ROLE, S.ALL, "Read roles and permissions"),
    _entry(A.UPDATE, R.ROLE, S.ALL, "Update roles and role assignments"),
    _entry(A.DELETE, R.ROLE, S.ALL, "Delete roles"),
    _entry(A.CREATE, R.PLAN, S.ALL, "Create plans"),
    _entry(A.READ, R.PLAN, S.ALL, "Read plans"),
    _entry(A.UPDATE, R.PLAN, S.ALL, "Update plans"),
    _entry(A.DELETE, R.PLAN, S.ALL, "Delete plans"),
    _entry(A.CREATE, R.SUBSCRIPTION, S.ALL, "Subscribe any user to a plan"),
    _entry(A.READ, R.SUBSCRIPTION, S.ALL, "Read any subscription"),
    _entry(A.DELETE, R.SUBSCRIPTION, S.ALL, "Cancel any subscription"),
    _entry(A.READ, R.ADMIN_STATS, S.ALL, "Read platform statistics"),
    _entry(A.READ, R.CONTACT_US, S.ALL, "Read contact requests"),
    _entry(A.UPDATE, R.CONTACT_US, S.ALL, "Update contact requests"),
    _entry(A.READ, R.HELP, S.ALL, "Read any help request"),
    _entry(A.UPDATE, R.HELP, S.ALL, "Update any help request"),
    _entry(A.READ, R.CHATBOT, S.ALL, "Read any chatbot"),
    _entry(A.UPDATE, R.CHATBOT, S.ALL, "Update any chatbot"),
    _entry(A.DELETE, R.CHATBOT, S.ALL, "Delete any chatbot"),
    _entry(A.READ, R.DOCUMENT, S.ALL, "Read any document"),
    _entry(A.DELETE, R.DOCUMENT, S.ALL, "Delete any document"),
)

ADMIN_ROLE = "admin"
USER_ROLE = "user"
SYSTEM_ROLES = frozenset({ADMIN_ROLE, USER_ROLE})

# Default bundles: every all-scope entry goes to admin, every self-scope entry to user.
DEFAULT_ROLE_BUNDLES: dict[str, tuple[PermissionKey, ...]] = {
    ADMIN_ROLE: tuple(entry.key for entry in PERMISSION_CATALOG if entry.key.scope == Scope.ALL),
    USER_ROLE: tuple(entry.key for entry in PERMISSION_CATALOG if entry.key.scope == Scope.SELF),
}

DEFAULT_ROLE_DESCRIPTIONS = {
    ADMIN_ROLE: "Platform administrator",
    USER_ROLE: "Default role for registered users",
}


def catalog_keys() -> frozenset[PermissionKey]:
    return frozenset(entry.key for entry in PERMISSION_CATALOG)
