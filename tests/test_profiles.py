import pytest

from estatevault.service.errors import AuthFailure
from estatevault.service.profiles import (
    InvestorProfile,
    LocalRepresentativeProfile,
    ProfileDirectory,
    PropertyOwnerProfile,
)
from estatevault.storage.models import Account, Role


def test_directory_covers_every_role():
    directory = ProfileDirectory()
    for role in Role:
        assert directory.for_role(role).role == role


def test_directory_rejects_missing_role():
    with pytest.raises(ValueError, match="admin"):
        ProfileDirectory(
            {
                Role.INVESTOR: InvestorProfile(),
                Role.PROPERTY_OWNER: PropertyOwnerProfile(),
                Role.LOCAL_REPRESENTATIVE: LocalRepresentativeProfile(),
            }
        )


def test_investor_gets_referral_code():
    profile = InvestorProfile().prepare({"referral_code": "FRIEND01"})
    assert len(profile["referral_code"]) == 8
    assert profile["referred_by"] == "FRIEND01"


def test_representative_region_is_trimmed_and_required():
    provider = LocalRepresentativeProfile()
    assert provider.prepare({"region": "  Algarve "}) == {"region": "Algarve"}
    assert isinstance(provider.prepare({"region": "   "}), AuthFailure)
    assert not provider.activates_on_email_verification


def test_describe_merges_role_view():
    account = Account.new(
        "owner@example.com",
        Role.PROPERTY_OWNER,
        profile={"trust_score": 4, "company_name": "Casa Lda"},
    )
    described = ProfileDirectory().describe(account)
    assert described["role"] == "property_owner"
    assert described["profile"] == {"trust_score": 4, "company_name": "Casa Lda"}
    assert "password_hash" not in described
