import pytest

from rewards_api.core.errors import InsufficientBalance, OutOfStock
from rewards_api.services.commands import CommandType, UnknownCommand, decode_callback, encode_callback, parse_command_text
from rewards_api.services.dispatch import describe_error
from rewards_api.services.transport import InboundEvent, InboundEventKind


def _command(sender_id: str, text: str, *, name: str = "") -> InboundEvent:
    return InboundEvent(kind=InboundEventKind.COMMAND, sender_id=sender_id, chat_id=sender_id, text=text, sender_name=name)


def _callback(sender_id: str, data: str) -> InboundEvent:
    return InboundEvent(kind=InboundEventKind.CALLBACK, sender_id=sender_id, chat_id=sender_id, text=data)


def _message(sender_id: str, text: str) -> InboundEvent:
    return InboundEvent(kind=InboundEventKind.MESSAGE, sender_id=sender_id, chat_id=sender_id, text=text)


@pytest.fixture
def bot(services, transport):
    services.dispatcher.attach()
    return transport


def test_command_parsing_and_callback_round_trip() -> None:
    command = parse_command_text("/start@RewardsBot ref_100")
    assert command.type is CommandType.START
    assert command.args == ("ref_100",)

    data = encode_callback(CommandType.CLAIM, "p1", 7)
    assert data == "claim:p1:7"
    assert decode_callback(data).args == ("p1", "7")

    with pytest.raises(UnknownCommand):
        parse_command_text("/teleport")
    with pytest.raises(UnknownCommand):
        decode_callback("teleport:1")


def test_errors_are_described_for_users() -> None:
    assert "3 short" in describe_error(InsufficientBalance("1", required=10, available=7))
    assert "out of stock" in describe_error(OutOfStock("p1", 7))


@pytest.mark.asyncio
async def test_start_registers_user_and_credits_referrer(bot, services, make_user) -> None:
    await make_user("100")

    await bot.deliver(_command("200", "/start ref_100", name="Alice"))

    assert (await services.users.require("200")).name == "Alice"
    assert await services.ledger.balance("100") == 1
    assert any("Welcome, Alice" in text for text in bot.messages_for("200"))


@pytest.mark.asyncio
async def test_start_without_membership_offers_verify_button(bot, services, make_user) -> None:
    await make_user("100")
    bot.memberships[("@rewards_channel", "200")] = False

    await bot.deliver(_command("200", "/start ref_100"))

    _, text, options = bot.sent_messages[-1]
    assert "@rewards_channel" in text
    assert options["buttons"][0][0][1] == "verify"
    assert await services.ledger.balance("100") == 0

    bot.memberships[("@rewards_channel", "200")] = True
    await bot.deliver(_callback("200", "verify"))
    assert await services.ledger.balance("100") == 1
    assert "Verified" in bot.messages_for("200")[-1]


@pytest.mark.asyncio
async def test_claim_flow_replies_with_key(bot, services, make_user) -> None:
    await make_user("1", balance=15)
    product = await services.catalog.create_product("ProA", prices={7: 10}, download_link="https://example.com/proa")
    await services.catalog.add_keys(product.id, 7, "KEY-123")

    await bot.deliver(_callback("1", f"quote:{product.id}:7"))
    assert "After claiming: 5 points" in bot.messages_for("1")[-1]

    await bot.deliver(_callback("1", f"claim:{product.id}:7"))
    reply = bot.messages_for("1")[-1]
    assert "KEY-123" in reply
    assert "https://example.com/proa" in reply
    assert await services.ledger.balance("1") == 5


@pytest.mark.asyncio
async def test_domain_errors_become_friendly_replies(bot, services, make_user) -> None:
    await make_user("1", balance=2)
    product = await services.catalog.create_product("ProA", prices={7: 10})
    await services.catalog.add_keys(product.id, 7, "KEY-123")

    await bot.deliver(_callback("1", f"claim:{product.id}:7"))

    assert "Not enough points" in bot.messages_for("1")[-1]
    assert await services.catalog.stock_counts(product.id) == {7: 1}


@pytest.mark.asyncio
async def test_malformed_callback_is_reported(bot, make_user) -> None:
    await make_user("1")

    await bot.deliver(_callback("1", "claim:only-product"))

    assert "could not be understood" in bot.messages_for("1")[-1]


@pytest.mark.asyncio
async def test_maintenance_mode_blocks_non_admins(bot, services, make_user) -> None:
    await make_user("1")
    await services.runtime_settings.update(maintenance_mode=True)

    await bot.deliver(_command("1", "/balance"))
    await bot.deliver(_command("900", "/help"))

    assert "maintenance" in bot.messages_for("1")[-1]
    assert "Commands" in bot.messages_for("900")[-1]


@pytest.mark.asyncio
async def test_banned_users_are_turned_away(bot, make_user) -> None:
    await make_user("1", banned=True)

    await bot.deliver(_command("1", "/daily"))

    assert "banned" in bot.messages_for("1")[-1]


@pytest.mark.asyncio
async def test_support_conversation_through_dispatcher(bot, services, make_user) -> None:
    await make_user("42", name="Alice")
    await services.support.add_staff("500", "Sam")

    await bot.deliver(_command("42", "/support"))
    session = await services.support.get_session("42")
    await bot.deliver(_callback("500", f"accept:42:{session.request_id}"))
    await bot.deliver(_message("42", "Hello, my key expired"))

    assert bot.messages_for("500")[-1].endswith("Hello, my key expired")

    await bot.deliver(_command("42", "/end"))
    assert "not allowed" in bot.messages_for("42")[-1]

    await bot.deliver(_command("500", "/end"))
    assert "ended" in bot.messages_for("42")[-1]


@pytest.mark.asyncio
async def test_free_text_outside_session_shows_menu(bot, make_user) -> None:
    await make_user("1")

    await bot.deliver(_message("1", "hello"))

    _, text, options = bot.sent_messages[-1]
    assert "get started" in text
    assert options["buttons"]
