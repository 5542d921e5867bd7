"""Routes inbound transport events to the rewards services."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from loguru import logger

from rewards_api.core.errors import (
    AlreadyActive,
    AlreadyPending,
    Contention,
    DailyRewardCooldown,
    FeatureDisabled,
    InsufficientBalance,
    NoActiveSession,
    NotAuthorized,
    OutOfStock,
    ProductNotFound,
    RequestStale,
    RewardsError,
    StoreUnavailable,
    TransportError,
    UserNotFound,
)
from rewards_api.core.settings import Settings, settings as default_settings
from rewards_api.services.commands import (
    Command,
    CommandType,
    UnknownCommand,
    decode_callback,
    encode_callback,
    parse_command_text,
)
from rewards_api.services.inventory import CatalogService, InventoryAllocator
from rewards_api.services.referrals import ReferralService, ReferralSkipReason
from rewards_api.services.rewards import DailyRewardService
from rewards_api.services.runtime_settings import RuntimeSettingsService
from rewards_api.services.support import SupportRouter
from rewards_api.services.transport import ChatTransport, InboundEvent, InboundEventKind
from rewards_api.services.users import UserDirectory

Handler = Callable[[InboundEvent, Command], Awaitable[None]]


def describe_error(exc: RewardsError) -> str:
    """User-facing explanation for a domain failure."""

    if isinstance(exc, InsufficientBalance):
        return f"❌ Not enough points. You need {exc.required} but have {exc.available} ({exc.shortfall} short)."
    if isinstance(exc, OutOfStock):
        return "📦 That key is out of stock right now. Please try another duration later."
    if isinstance(exc, DailyRewardCooldown):
        return f"⏳ You already claimed today's reward. Come back in {exc.hours_remaining}h."
    if isinstance(exc, FeatureDisabled):
        return f"🚧 {exc.feature} is temporarily disabled."
    if isinstance(exc, ProductNotFound):
        return "❌ That product is no longer available."
    if isinstance(exc, AlreadyPending):
        return "⏳ Your support request is already waiting for a staff member."
    if isinstance(exc, AlreadyActive):
        return "💬 You are already in a support session."
    if isinstance(exc, RequestStale):
        return "⚠️ This request was already handled or withdrawn."
    if isinstance(exc, NoActiveSession):
        return "ℹ️ There is no active support session."
    if isinstance(exc, NotAuthorized):
        return "⛔ You are not allowed to do that."
    if isinstance(exc, UserNotFound):
        return "Please send /start first."
    if isinstance(exc, (Contention, StoreUnavailable)):
        return "⚠️ We're busy right now. Please try again in a moment."
    return "⚠️ Something went wrong. Please try again."


class CommandDispatcher:
    """Typed command table wired to ``ChatTransport.on_inbound_event``.

    Slash commands and button callbacks both decode to a :class:`Command`;
    free-text messages are relayed into live support when the sender is in a
    session.
    """

    def __init__(
        self,
        transport: ChatTransport,
        *,
        users: UserDirectory,
        referrals: ReferralService,
        daily_rewards: DailyRewardService,
        catalog: CatalogService,
        allocator: InventoryAllocator,
        support: SupportRouter,
        runtime_settings: RuntimeSettingsService,
        config: Settings | None = None,
    ) -> None:
        self._transport = transport
        self._users = users
        self._referrals = referrals
        self._daily = daily_rewards
        self._catalog = catalog
        self._allocator = allocator
        self._support = support
        self._runtime = runtime_settings
        self._config = config or default_settings
        self._handlers: Dict[CommandType, Handler] = {
            CommandType.START: self._start,
            CommandType.HELP: self._help,
            CommandType.BALANCE: self._balance,
            CommandType.DAILY: self._daily_reward,
            CommandType.REFERRAL_LINK: self._referral_link,
            CommandType.VERIFY_MEMBERSHIP: self._verify_membership,
            CommandType.CATALOG: self._show_catalog,
            CommandType.SELECT_PRODUCT: self._select_product,
            CommandType.QUOTE: self._quote,
            CommandType.CLAIM: self._claim,
            CommandType.MY_KEYS: self._my_keys,
            CommandType.SUPPORT: self._request_support,
            CommandType.CANCEL_SUPPORT: self._cancel_support,
            CommandType.ACCEPT_SUPPORT: self._accept_support,
            CommandType.END_SUPPORT: self._end_support,
        }

    def attach(self) -> None:
        self._transport.on_inbound_event(self.handle)

    async def handle(self, event: InboundEvent) -> None:
        try:
            await self._handle(event)
        except RewardsError as exc:
            logger.info("Inbound action rejected", sender_id=event.sender_id, kind=event.kind.value, error=exc.code)
            await self._reply(event, describe_error(exc))
        except ValueError as exc:
            logger.info("Malformed inbound command", sender_id=event.sender_id, text=event.text, error=str(exc))
            await self._reply(event, "⚠️ That request could not be understood. Send /help for the command list.")

    async def _handle(self, event: InboundEvent) -> None:
        is_admin = event.sender_id in self._config.admin_ids
        toggles = await self._runtime.load()
        if toggles.maintenance_mode and not is_admin:
            await self._reply(event, "🛠 The bot is under maintenance. Please check back soon.")
            return

        command = self._decode(event)
        if command is None or command.type is not CommandType.START:
            user = await self._users.get(event.sender_id)
            if user is not None and user.banned:
                await self._reply(event, "⛔ You have been banned from using this bot.")
                return
            if user is not None:
                await self._users.touch(event.sender_id)

        if command is None:
            await self._relay_or_hint(event)
            return

        handler = self._handlers[command.type]
        await handler(event, command)

    def _decode(self, event: InboundEvent) -> Command | None:
        try:
            if event.kind is InboundEventKind.CALLBACK:
                return decode_callback(event.text)
            if event.kind is InboundEventKind.COMMAND or event.text.startswith("/"):
                return parse_command_text(event.text)
        except UnknownCommand:
            logger.debug("Unknown command", sender_id=event.sender_id, text=event.text)
            if event.kind is not InboundEventKind.MESSAGE:
                return Command(CommandType.HELP)
        return None

    # Handlers

    async def _start(self, event: InboundEvent, command: Command) -> None:
        registration = await self._users.ensure_user(
            event.sender_id,
            name=event.sender_name,
            username=event.sender_username,
            start_payload=command.args[0] if command.args else None,
        )
        if registration.user.banned:
            await self._reply(event, "⛔ You have been banned from using this bot.")
            return

        await self._reply(
            event,
            f"👋 Welcome, {registration.user.name or 'friend'}!\n\n"
            "Earn points by inviting friends and claiming your daily reward, "
            "then spend them on keys.",
            options={"buttons": self._main_menu()},
        )
        if registration.user.referred_by and not registration.user.referral_claimed:
            outcome = await self._referrals.credit_referral_if_eligible(event.sender_id)
            if not outcome.credited and self._config.required_channels:
                channels = ", ".join(self._config.required_channels)
                await self._reply(
                    event,
                    f"📢 Join {channels} and tap verify so your friend gets credit.",
                    options={"buttons": [[("✅ I've joined", encode_callback(CommandType.VERIFY_MEMBERSHIP))]]},
                )

    async def _help(self, event: InboundEvent, command: Command) -> None:
        await self._reply(
            event,
            "Commands:\n"
            "/balance - your points\n"
            "/daily - claim the daily reward\n"
            "/referral - your invite link\n"
            "/catalog - browse keys\n"
            "/keys - keys you claimed\n"
            "/support - talk to a human\n"
            "/end - close a support session (staff)",
        )

    async def _balance(self, event: InboundEvent, command: Command) -> None:
        user = await self._users.require(event.sender_id)
        tier = f"\n👑 VIP: {user.vip_tier.value.title()}" if user.vip_tier else ""
        await self._reply(
            event,
            f"💰 Balance: {user.balance} points\n"
            f"📈 Earned: {user.total_earned} · Spent: {user.total_spent}\n"
            f"👥 Referrals: {user.total_referrals}{tier}",
        )

    async def _daily_reward(self, event: InboundEvent, command: Command) -> None:
        result = await self._daily.claim(event.sender_id)
        await self._reply(
            event,
            f"🎁 +{result.reward} points! Streak: {result.streak} day(s). Balance: {result.balance}.",
        )

    async def _referral_link(self, event: InboundEvent, command: Command) -> None:
        user = await self._users.require(event.sender_id)
        payload = f"ref_{user.id}"
        username = self._config.telegram_bot_username
        link = f"https://t.me/{username}?start={payload}" if username else f"/start {payload}"
        reward = await self._runtime.referral_reward()
        await self._reply(
            event,
            f"🔗 Your referral link:\n{link}\n\n"
            f"Earn {reward} point(s) for every friend who joins. Referred so far: {user.total_referrals}.",
        )

    async def _verify_membership(self, event: InboundEvent, command: Command) -> None:
        outcome = await self._referrals.credit_referral_if_eligible(event.sender_id)
        if outcome.credited:
            await self._reply(event, "✅ Verified! Your friend has been credited.")
        elif outcome.skipped is ReferralSkipReason.JOIN_CONDITION_UNMET:
            await self._reply(event, "❌ You haven't joined all required channels yet.")
        else:
            await self._reply(event, "✅ You're all set.")

    async def _show_catalog(self, event: InboundEvent, command: Command) -> None:
        products = await self._catalog.list_products(active_only=True)
        if not products:
            await self._reply(event, "📦 No products are available right now.")
            return
        buttons = [[(product.name, encode_callback(CommandType.SELECT_PRODUCT, product.id))] for product in products]
        await self._reply(event, "🛒 Choose a product:", options={"buttons": buttons})

    async def _select_product(self, event: InboundEvent, command: Command) -> None:
        product_id = self._arg(command, 0)
        product = await self._catalog.require_product(product_id)
        stock = await self._catalog.stock_counts(product_id)
        buttons = [
            [(f"{days}d · {price} pts · {stock.get(days, 0)} left", encode_callback(CommandType.QUOTE, product_id, days))]
            for days, price in sorted(product.prices.items())
        ]
        await self._reply(event, f"⏱ {product.name}: choose a duration", options={"buttons": buttons})

    async def _quote(self, event: InboundEvent, command: Command) -> None:
        product_id, days = self._arg(command, 0), int(self._arg(command, 1))
        quote = await self._allocator.quote(event.sender_id, product_id, days)
        lines = [
            f"🔑 {quote.product_name} · {quote.duration_days} day(s)",
            f"Cost: {quote.price} points",
            f"Your balance: {quote.balance} points",
        ]
        if not quote.affordable:
            lines.append(f"❌ You need {quote.shortfall} more points.")
            await self._reply(event, "\n".join(lines))
            return
        lines.append(f"After claiming: {quote.remaining_after} points")
        await self._reply(
            event,
            "\n".join(lines),
            options={"buttons": [[("✅ Confirm", encode_callback(CommandType.CLAIM, product_id, days))]]},
        )

    async def _claim(self, event: InboundEvent, command: Command) -> None:
        product_id, days = self._arg(command, 0), int(self._arg(command, 1))
        item = await self._allocator.claim(event.sender_id, product_id, days)
        product = await self._catalog.get_product(product_id)
        expires = item.expires_at.strftime("%Y-%m-%d %H:%M UTC") if item.expires_at else "-"
        text = f"🎉 Here is your key:\n\n`{item.payload}`\n\nValid until {expires}."
        if product is not None and product.download_link:
            text += f"\n⬇️ Download: {product.download_link}"
        await self._reply(event, text)

    async def _my_keys(self, event: InboundEvent, command: Command) -> None:
        owned = await self._allocator.list_user_items(event.sender_id)
        if not owned:
            await self._reply(event, "🔑 You haven't claimed any keys yet.")
            return
        lines = ["🔑 Your keys:"]
        for entry in owned[:10]:
            state = "expired" if entry.expired else f"until {entry.item.expires_at:%Y-%m-%d}"
            lines.append(f"• {entry.product_name} ({entry.item.duration_days}d) `{entry.item.payload}` - {state}")
        await self._reply(event, "\n".join(lines))

    async def _request_support(self, event: InboundEvent, command: Command) -> None:
        await self._users.require(event.sender_id)
        session = await self._support.request_support(event.sender_id, user_name=event.sender_name)
        await self._reply(
            event,
            f"🆘 Support request #{session.request_id} sent. A staff member will join shortly.",
            options={"buttons": [[("✖️ Cancel request", encode_callback(CommandType.CANCEL_SUPPORT))]]},
        )

    async def _cancel_support(self, event: InboundEvent, command: Command) -> None:
        await self._support.cancel_request(event.sender_id)
        await self._reply(event, "Your support request was withdrawn.")

    async def _accept_support(self, event: InboundEvent, command: Command) -> None:
        user_id, request_id = self._arg(command, 0), int(self._arg(command, 1))
        await self._support.accept(event.sender_id, user_id, request_id)

    async def _end_support(self, event: InboundEvent, command: Command) -> None:
        await self._support.end(event.sender_id)

    async def _relay_or_hint(self, event: InboundEvent) -> None:
        try:
            await self._support.relay_message(event.sender_id, event.text)
        except NoActiveSession:
            await self._reply(event, "Use the menu below to get started.", options={"buttons": self._main_menu()})

    # Helpers

    @staticmethod
    def _arg(command: Command, position: int) -> str:
        if len(command.args) <= position:
            raise UnknownCommand(f"{command.type.value} is missing argument {position}")
        return command.args[position]

    @staticmethod
    def _main_menu() -> list[list[tuple[str, str]]]:
        return [
            [("💰 Balance", encode_callback(CommandType.BALANCE)), ("🎁 Daily", encode_callback(CommandType.DAILY))],
            [("🛒 Catalog", encode_callback(CommandType.CATALOG)), ("🔑 My keys", encode_callback(CommandType.MY_KEYS))],
            [("🔗 Referral", encode_callback(CommandType.REFERRAL_LINK)), ("🆘 Support", encode_callback(CommandType.SUPPORT))],
        ]

    async def _reply(self, event: InboundEvent, text: str, *, options: dict[str, Any] | None = None) -> None:
        try:
            await self._transport.send_message(event.chat_id, text, options=options)
        except TransportError as exc:
            logger.warning("Reply not delivered", chat_id=event.chat_id, error=str(exc))
