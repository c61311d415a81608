"""
Authentication / session context shared by the API client and the dashboards
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from lakeview_core.config.settings import API_TOKEN, ROLES

logger = logging.getLogger(__name__)


@dataclass
class AuthSession:
    """
    Bearer token plus the cached current user

    Passed explicitly to LakeViewApiClient. The cached user carries a
    staleness flag so callers know when /auth/me has to be fetched again
    (after login, logout, or a profile update).
    """
    token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    stale: bool = True
    _listeners: list = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls) -> 'AuthSession':
        return cls(token=API_TOKEN)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    @property
    def role(self) -> Optional[str]:
        if not self.user:
            return None
        role = self.user.get('role')
        return role if role in ROLES else None

    def has_role(self, *roles: str) -> bool:
        """Any-match role check; superadmin is always allowed"""
        role = self.role
        if role is None:
            return False
        if role == 'superadmin':
            return True
        wanted = set()
        for arg in roles:
            wanted.update(part.strip() for part in arg.replace('|', ',').split(',') if part.strip())
        return not wanted or role in wanted

    def set_token(self, token: Optional[str]) -> None:
        self.token = token or None
        self.stale = True
        if not self.token:
            self.user = None
        self._notify()

    def clear(self) -> None:
        self.set_token(None)

    def set_user(self, user: Optional[Dict[str, Any]]) -> None:
        self.user = user
        self.stale = user is None
        self._notify()

    def mark_stale(self) -> None:
        self.stale = True

    def on_change(self, callback) -> None:
        """Register a callable invoked with the session whenever auth changes"""
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in self._listeners:
            callback(self)
