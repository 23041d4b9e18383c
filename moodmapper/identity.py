"""Identity holder fed by the sign-in flow."""

from __future__ import annotations

import logging

from PySide6.QtCore import QObject, Signal

from moodmapper.models import User


class IdentityProvider(QObject):
    """Keeps the current user and announces sign-in/sign-out.

    Signals:
        user_changed: emitted with the new ``User`` or ``None``
    """

    user_changed = Signal(object)

    def __init__(self, user: User | None = None, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._user = user

    @property
    def current_user(self) -> User | None:
        return self._user

    @property
    def can_sync(self) -> bool:
        """Anonymous identities have no durable cloud identity, so they never sync."""
        return self._user is not None and not self._user.is_anonymous

    def sync_user(self) -> User | None:
        return self._user if self.can_sync else None

    def set_user(self, user: User | None) -> None:
        if user == self._user:
            return
        self._user = user
        logging.info(
            "Auth state changed - Authenticated: %s, Anonymous: %s",
            user is not None,
            bool(user and user.is_anonymous),
        )
        self.user_changed.emit(user)

    def sign_out(self) -> None:
        self.set_user(None)
