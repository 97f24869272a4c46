"""Tests for seller/buyer profiles in the in-memory store."""

import pytest
from pydantic import ValidationError

from errors import NotFoundError, ProfileExistsError
from schemas.commerce import ProfileInput, SellerAccountStatus
from tests.conftest import BUYER, SELLER


def _profile(**overrides):
    fields = dict(
        display_name="Kissa Hinata",
        icon_url="https://cdn.example.test/icons/hinata.png",
        post_code="150-0001",
        address="Shibuya, Tokyo",
        about_me="Small-batch roaster.",
    )
    fields.update(overrides)
    return ProfileInput(**fields)


class TestCreateProfile:
    async def test_create_and_read_back(self, store):
        created = await store.create_profile(SELLER, _profile())

        fetched = await store.get_profile(SELLER)

        assert fetched == created
        assert fetched.user_id == SELLER
        assert fetched.display_name == "Kissa Hinata"
        assert fetched.stripe_account_id is None
        assert fetched.stripe_account_status is None

    async def test_second_create_conflicts(self, store):
        await store.create_profile(SELLER, _profile())

        with pytest.raises(ProfileExistsError):
            await store.create_profile(SELLER, _profile(display_name="Someone else"))

        assert (await store.get_profile(SELLER)).display_name == "Kissa Hinata"

    async def test_missing_profile(self, store):
        with pytest.raises(NotFoundError):
            await store.get_profile(BUYER)


class TestUpdateProfile:
    async def test_update_replaces_fields(self, store):
        created = await store.create_profile(SELLER, _profile())

        updated = await store.update_profile(SELLER, _profile(address="Naha, Okinawa", about_me=""))

        assert updated.address == "Naha, Okinawa"
        assert updated.about_me == ""
        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at

    async def test_update_keeps_stripe_account(self, store):
        await store.create_profile(SELLER, _profile())
        await store.update_stripe_account(SELLER, "acct_1", SellerAccountStatus.RESTRICTED)

        updated = await store.update_profile(SELLER, _profile(display_name="Hinata Roasters"))

        assert updated.stripe_account_id == "acct_1"
        assert updated.stripe_account_status == SellerAccountStatus.RESTRICTED

    async def test_update_missing_profile(self, store):
        with pytest.raises(NotFoundError):
            await store.update_profile(BUYER, _profile())

    async def test_stripe_account_on_missing_profile(self, store):
        with pytest.raises(NotFoundError):
            await store.update_stripe_account(BUYER, "acct_1", SellerAccountStatus.ENABLED)


class TestProfileInput:
    def test_display_name_is_stripped(self):
        assert _profile(display_name="  Hinata  ").display_name == "Hinata"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 101])
    def test_display_name_rejected(self, name):
        with pytest.raises(ValidationError):
            _profile(display_name=name)
