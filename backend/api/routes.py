# api/routes.py
# ============================================================================
# BEAN CHECKOUT BACKEND — HTTP ROUTES
# ============================================================================
# Catalog, cart, checkout, order and profile endpoints. Every authenticated
# handler takes the caller identity from current_user and hands it on.
# ============================================================================

from typing import List

from fastapi import APIRouter, Depends, Request, Response, status

from api.auth import current_user
from schemas.commerce import (
    AccountLinkResponse,
    AddCartItemRequest,
    Bean,
    BeanInput,
    CartItem,
    CartView,
    CheckoutSession,
    OrderDetail,
    Profile,
    ProfileInput,
    UpdateCartItemRequest,
    cart_total,
)
from services.checkout import CheckoutService
from services.seller_onboarding import SellerOnboardingService
from storage.interfaces import IStore


def get_store(request: Request) -> IStore:
    return request.app.state.store


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_onboarding(request: Request) -> SellerOnboardingService:
    return request.app.state.onboarding


# ============================================================================
# CATALOG
# ============================================================================

beans_router = APIRouter(prefix="/api", tags=["beans"])


@beans_router.get("/beans", response_model=List[Bean])
async def list_beans(store: IStore = Depends(get_store)):
    return await store.list_beans()


@beans_router.post("/beans", response_model=Bean, status_code=status.HTTP_201_CREATED)
async def create_bean(
    body: BeanInput,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.create_bean(user_id, body)


@beans_router.get("/beans/{bean_id}", response_model=Bean)
async def get_bean(bean_id: int, store: IStore = Depends(get_store)):
    return await store.get_bean(bean_id)


@beans_router.put("/beans/{bean_id}", response_model=Bean)
async def update_bean(
    bean_id: int,
    body: BeanInput,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.update_bean(bean_id, user_id, body)


@beans_router.delete("/beans/{bean_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_bean(
    bean_id: int,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    await store.delete_bean(bean_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@beans_router.get("/my/beans", response_model=List[Bean])
async def list_my_beans(
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.list_beans_by_owner(user_id)


# ============================================================================
# CART
# ============================================================================

cart_router = APIRouter(prefix="/api/cart", tags=["cart"])


@cart_router.post("/items", response_model=CartItem)
async def add_cart_item(
    body: AddCartItemRequest,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.add_or_merge(user_id, body.bean_id, body.quantity)


@cart_router.get("", response_model=CartView)
async def get_cart(
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    items = await store.list_items(user_id)
    return CartView(items=items, total_amount=cart_total(items))


@cart_router.put("/items/{cart_item_id}", response_model=CartItem)
async def update_cart_item(
    cart_item_id: str,
    body: UpdateCartItemRequest,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.set_quantity(cart_item_id, user_id, body.quantity)


@cart_router.delete("/items/{cart_item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_cart_item(
    cart_item_id: str,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    await store.remove_item(cart_item_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# CHECKOUT + ORDERS
# ============================================================================

checkout_router = APIRouter(prefix="/api", tags=["checkout"])


@checkout_router.post("/checkout/payment-intent", response_model=CheckoutSession)
async def create_payment_intent(
    user_id: str = Depends(current_user),
    checkout: CheckoutService = Depends(get_checkout),
):
    return await checkout.start_checkout(user_id)


@checkout_router.get("/orders", response_model=List[OrderDetail])
async def list_orders(
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    orders = await store.list_orders(user_id)
    return [
        OrderDetail(**order.model_dump(), items=await store.list_order_items(order.id))
        for order in orders
    ]


# ============================================================================
# PROFILE + SELLER ONBOARDING
# ============================================================================

profile_router = APIRouter(prefix="/api", tags=["profile"])


@profile_router.post("/profile", response_model=Profile, status_code=status.HTTP_201_CREATED)
async def create_profile(
    body: ProfileInput,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.create_profile(user_id, body)


@profile_router.get("/profile", response_model=Profile)
async def get_profile(
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.get_profile(user_id)


@profile_router.put("/profile", response_model=Profile)
async def update_profile(
    body: ProfileInput,
    user_id: str = Depends(current_user),
    store: IStore = Depends(get_store),
):
    return await store.update_profile(user_id, body)


@profile_router.post("/stripe/connect/account-link", response_model=AccountLinkResponse)
async def create_account_link(
    user_id: str = Depends(current_user),
    onboarding: SellerOnboardingService = Depends(get_onboarding),
):
    return await onboarding.create_account_link(user_id)


@profile_router.post("/stripe/connect/refresh", response_model=Profile)
async def refresh_account_status(
    user_id: str = Depends(current_user),
    onboarding: SellerOnboardingService = Depends(get_onboarding),
):
    return await onboarding.refresh_account_status(user_id)
