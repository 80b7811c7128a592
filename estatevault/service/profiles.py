from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Union

from estatevault.service.errors import AuthErrorKind, AuthFailure, failure
from estatevault.storage.models import Account, Role


class ProfileProvider(Protocol):
    """Role-specific view over ``Account.profile``."""

    role: Role
    self_registration: bool
    activates_on_email_verification: bool

    def prepare(self, data: Mapping[str, Any]) -> Union[Dict[str, Any], AuthFailure]: ...

    def describe(self, account: Account) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class InvestorProfile:
    role: Role = Role.INVESTOR
    self_registration: bool = True
    activates_on_email_verification: bool = True
    default_investment_limit: int = 0

    def prepare(self, data: Mapping[str, Any]) -> Union[Dict[str, Any], AuthFailure]:
        return {
            "referral_code": secrets.token_hex(4).upper(),
            "referred_by": data.get("referral_code"),
        }

    def describe(self, account: Account) -> Dict[str, Any]:
        return {
            "investment_limit": account.profile.get("investment_limit", self.default_investment_limit),
            "referral_code": account.profile.get("referral_code"),
        }


@dataclass(frozen=True)
class PropertyOwnerProfile:
    role: Role = Role.PROPERTY_OWNER
    self_registration: bool = True
    activates_on_email_verification: bool = True

    def prepare(self, data: Mapping[str, Any]) -> Union[Dict[str, Any], AuthFailure]:
        return {"trust_score": 0, "company_name": data.get("company_name")}

    def describe(self, account: Account) -> Dict[str, Any]:
        return {
            "trust_score": account.profile.get("trust_score", 0),
            "company_name": account.profile.get("company_name"),
        }


@dataclass(frozen=True)
class LocalRepresentativeProfile:
    """Representatives wait for admin approval after verifying their email."""

    role: Role = Role.LOCAL_REPRESENTATIVE
    self_registration: bool = True
    activates_on_email_verification: bool = False

    def prepare(self, data: Mapping[str, Any]) -> Union[Dict[str, Any], AuthFailure]:
        region = (data.get("region") or "").strip()
        if not region:
            return failure(AuthErrorKind.INVALID_STATE, "region is required for local representatives")
        return {"region": region}

    def describe(self, account: Account) -> Dict[str, Any]:
        return {"region": account.profile.get("region")}


@dataclass(frozen=True)
class AdminProfile:
    role: Role = Role.ADMIN
    self_registration: bool = False
    activates_on_email_verification: bool = True

    def prepare(self, data: Mapping[str, Any]) -> Union[Dict[str, Any], AuthFailure]:
        return {}

    def describe(self, account: Account) -> Dict[str, Any]:
        return {}


class ProfileDirectory:
    """Closed role -> provider mapping, checked for completeness on construction."""

    def __init__(self, providers: Optional[Mapping[Role, ProfileProvider]] = None) -> None:
        mapping = dict(providers) if providers is not None else {
            provider.role: provider
            for provider in (
                InvestorProfile(),
                PropertyOwnerProfile(),
                LocalRepresentativeProfile(),
                AdminProfile(),
            )
        }
        missing = [role.value for role in Role if role not in mapping]
        if missing:
            raise ValueError(f"no profile provider for roles: {', '.join(missing)}")
        self._providers: Dict[Role, ProfileProvider] = mapping

    def for_role(self, role: Role) -> ProfileProvider:
        return self._providers[role]

    def describe(self, account: Account) -> Dict[str, Any]:
        return {
            "id": account.id,
            "email": account.email,
            "role": account.role.value,
            "status": account.status.value,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "email_verified": account.email_verified,
            "two_factor_enabled": account.two_factor_enabled,
            "profile": self.for_role(account.role).describe(account),
        }
