from __future__ import annotations

import threading
from typing import Dict, List, Optional

from stepguard.logging import get_logger
from stepguard.storage.errors import ConstraintViolation
from stepguard.storage.models import Identity, IdentityProviderLink


class MemoryStore:
    """In-memory identity store: identities, password records and provider links."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.providers: List[IdentityProviderLink] = []
        # RLock for all data operations to allow nested acquisitions
        self._data_lock = threading.RLock()

    def find_identity(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> Optional[Identity]:
        """Return the identity matching either email or phone, if any."""
        with self._data_lock:
            for identity in self.identities.values():
                if email and identity.email == email:
                    return identity
                if phone and identity.phone == phone:
                    return identity
            return None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def create_identity(
        self,
        email: Optional[str],
        *,
        phone: Optional[str] = None,
        name: Optional[str] = None,
        is_active: bool = True,
        two_factor_enabled: bool = True,
        meta: Optional[Dict] = None,
    ) -> Identity:
        with self._data_lock:
            for existing in self.identities.values():
                if email and existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if phone and existing.phone == phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            identity = Identity(
                id=Identity.new_id(),
                email=email,
                phone=phone,
                name=name,
                is_active=is_active,
                two_factor_enabled=two_factor_enabled,
                meta=meta.copy() if meta else {},
            )
            self.identities[identity.id] = identity
            return identity

    def activate_identity(self, identity_id: str) -> Identity:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                raise ConstraintViolation("identity not found", {"identity_id": identity_id})
            if not identity.is_active:
                identity.is_active = True
                self.logger.info("identity_activated", identity_id=identity_id)
            return identity

    def delete_identity(self, identity_id: str) -> bool:
        with self._data_lock:
            if self.identities.pop(identity_id, None) is None:
                return False
            self.credentials.pop(identity_id, None)
            self.providers = [p for p in self.providers if p.identity_id != identity_id]
            self.logger.info("identity_deleted", identity_id=identity_id)
            return True

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for credentials", {"identity_id": identity_id}
                )
            self.credentials[identity_id] = (password_hash, password_algo)

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(identity_id)

    def link_identity_provider(
        self, identity_id: str, provider: str, provider_uid: str
    ) -> None:
        with self._data_lock:
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    return
            self.providers.append(
                IdentityProviderLink(
                    identity_id=identity_id, provider=provider, provider_uid=provider_uid
                )
            )

    def get_identity_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[Identity]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    return self.identities.get(mapping.identity_id)
            return None
