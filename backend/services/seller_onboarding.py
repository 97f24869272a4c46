# services/seller_onboarding.py
# ============================================================================
# BEAN CHECKOUT BACKEND — SELLER ONBOARDING
# ============================================================================
# Connects a seller's profile to a processor account:
#
#   start:  profile -> (create connected account once) -> hosted onboarding URL
#   return: profile -> re-read account from processor -> store status
# ============================================================================

import structlog

from config import short_id
from errors import SellerAccountMissingError
from schemas.commerce import AccountLinkResponse, Profile, SellerAccountStatus
from services.payment_processor import ConnectedAccount, PaymentProcessor
from storage.interfaces import IProfileStore


def account_status(account: ConnectedAccount) -> SellerAccountStatus:
    return SellerAccountStatus.ENABLED if account.charges_enabled else SellerAccountStatus.RESTRICTED


class SellerOnboardingService:

    def __init__(
        self,
        store: IProfileStore,
        processor: PaymentProcessor,
        refresh_url: str,
        return_url: str,
        country: str = "JP",
    ):
        self.store = store
        self.processor = processor
        self.refresh_url = refresh_url
        self.return_url = return_url
        self.country = country
        self._logger = structlog.get_logger().bind(component="seller_onboarding")

    async def create_account_link(self, user_id: str) -> AccountLinkResponse:
        """
        Onboarding URL for the caller. The connected account is created on
        the first call and reused afterwards.

        Raises NotFoundError when the caller has no profile yet.
        """
        profile = await self.store.get_profile(user_id)

        account_id = profile.stripe_account_id
        if not account_id:
            account = await self.processor.create_connected_account(user_id, self.country)
            account_id = account.account_id
            await self.store.update_stripe_account(user_id, account_id, account_status(account))
            self._logger.info("seller_account_attached", user=short_id(user_id), account_id=account_id)

        url = await self.processor.create_account_link(account_id, self.refresh_url, self.return_url)
        return AccountLinkResponse(url=url)

    async def refresh_account_status(self, user_id: str) -> Profile:
        """Re-read the connected account after the seller returns from onboarding"""
        profile = await self.store.get_profile(user_id)
        if not profile.stripe_account_id:
            self._logger.warning("seller_account_missing", user=short_id(user_id))
            raise SellerAccountMissingError()

        account = await self.processor.refresh_account_status(profile.stripe_account_id)
        status = account_status(account)
        self._logger.info(
            "seller_account_refreshed",
            user=short_id(user_id),
            account_id=account.account_id,
            status=status.value,
        )
        return await self.store.update_stripe_account(user_id, account.account_id, status)
