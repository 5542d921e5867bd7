"""Wires the rewards services around one store and one chat transport."""

from __future__ import annotations

from dataclasses import dataclass

from rewards_api.core.settings import Settings
from rewards_api.observability.rewards import RewardsObservabilityStore, get_rewards_store
from rewards_api.services.broadcast import BroadcastCoordinator
from rewards_api.services.dispatch import CommandDispatcher
from rewards_api.services.inventory import CatalogService, InventoryAllocator
from rewards_api.services.ledger import LedgerService
from rewards_api.services.referrals import ChannelMembershipChecker, ReferralService
from rewards_api.services.rewards import DailyRewardService
from rewards_api.services.runtime_settings import RuntimeSettingsService
from rewards_api.services.support import SupportRouter
from rewards_api.services.transport import ChatTransport
from rewards_api.services.users import UserDirectory
from rewards_api.store import KeyValueStore


@dataclass
class ServiceContainer:
    store: KeyValueStore
    transport: ChatTransport
    runtime_settings: RuntimeSettingsService
    users: UserDirectory
    ledger: LedgerService
    referrals: ReferralService
    daily_rewards: DailyRewardService
    catalog: CatalogService
    allocator: InventoryAllocator
    broadcasts: BroadcastCoordinator
    support: SupportRouter
    dispatcher: CommandDispatcher
    observability: RewardsObservabilityStore


def build_container(
    store: KeyValueStore,
    transport: ChatTransport,
    config: Settings,
    *,
    observability: RewardsObservabilityStore | None = None,
) -> ServiceContainer:
    observability = observability or get_rewards_store()
    runtime_settings = RuntimeSettingsService(store, config=config)
    users = UserDirectory(store)
    ledger = LedgerService(store, max_attempts=config.ledger_max_attempts, observability=observability)
    referrals = ReferralService(
        store,
        ledger,
        runtime_settings,
        ChannelMembershipChecker(transport, config.required_channels),
        transport=transport,
        observability=observability,
    )
    daily_rewards = DailyRewardService(ledger, runtime_settings, config=config)
    catalog = CatalogService(store)
    allocator = InventoryAllocator(
        store,
        ledger,
        catalog,
        runtime_settings,
        transport=transport,
        config=config,
        observability=observability,
    )
    broadcasts = BroadcastCoordinator(store, transport, users, config=config, observability=observability)
    support = SupportRouter(store, transport, config=config, observability=observability)
    dispatcher = CommandDispatcher(
        transport,
        users=users,
        referrals=referrals,
        daily_rewards=daily_rewards,
        catalog=catalog,
        allocator=allocator,
        support=support,
        runtime_settings=runtime_settings,
        config=config,
    )
    return ServiceContainer(
        store=store,
        transport=transport,
        runtime_settings=runtime_settings,
        users=users,
        ledger=ledger,
        referrals=referrals,
        daily_rewards=daily_rewards,
        catalog=catalog,
        allocator=allocator,
        broadcasts=broadcasts,
        support=support,
        dispatcher=dispatcher,
        observability=observability,
    )
