"""
Demonstration scripts for the sync engine.

Each scenario builds an in-memory remote store and one or more clients, runs
a few commands and prints what every client ends up seeing. Run them from the
CLI (`python cli.py demo checkout`) and watch the log to follow the flow.
"""

import asyncio
import logging

from shared.config import SyncSettings
from shared.models import Recipient
from shared.storage import SharedStorage
from sync_engine.engine import SyncEngine
from sync_engine.remote import InMemoryRemoteStore

logger = logging.getLogger("demo")

SEED_PRODUCTS = [
    {"id": "prod-tee", "name": "Classic Tee (case of 12)", "price": "100.00", "stock": 40},
    {"id": "prod-cap", "name": "Logo Cap (case of 6)", "price": "50.00", "stock": 25},
    {"id": "prod-hoodie", "name": "Heavyweight Hoodie (case of 6)", "price": "180.00", "stock": 5},
    {"id": "prod-tote", "name": "Canvas Tote (case of 20)", "price": "60.00", "stock": 11},
]


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )


def demo_settings() -> SyncSettings:
    """Settings with the timers shrunk so a demo finishes in seconds."""
    return SyncSettings(
        queue_retry_delay=0.1,
        toast_duration=0.05,
        startup_grace_delay=0.1,
        remote_ready_attempts=3,
        remote_ready_interval=0.05,
        backup_interval=60,
        integrity_check_interval=60,
    )


def banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70 + "\n")


def section(text: str) -> None:
    print("\n" + "-" * 70)
    print(text)
    print("-" * 70 + "\n")


def new_server() -> InMemoryRemoteStore:
    server = InMemoryRemoteStore(latency=0.01)
    server.seed("products", SEED_PRODUCTS)
    return server


async def new_client(
    server: InMemoryRemoteStore,
    client_id: str,
    recipient: Recipient,
    storage: SharedStorage = None,
    settings: SyncSettings = None,
) -> SyncEngine:
    engine = SyncEngine(
        client_id,
        storage or SharedStorage(),
        server.connect(client_id),
        recipient,
        settings=settings or demo_settings(),
    )
    await engine.start(background_jobs=False)
    await engine.settle()
    return engine


async def settle_all(*engines: SyncEngine) -> None:
    # Changes hop between clients through the server, so settle a few times
    for _ in range(3):
        for engine in engines:
            await engine.settle()


def print_stock(engine: SyncEngine) -> None:
    for product in engine.catalog.list_products():
        print(f"  {product.id:<12} stock={product.stock:<3} {product.status}")


# =============================================================================
# Scenarios
# =============================================================================

async def run_checkout_demo():
    """
    A partner fills a cart and checks out.

    Shows the totals calculation (shipping below the free threshold, tax
    rounded half-up) and the notifications fanned out to owner and admin.
    """
    banner("SYNC ENGINE DEMO: Checkout")

    server = new_server()
    partner = await new_client(server, "partner-tab", Recipient(user_id="partner-1"))
    admin = await new_client(server, "admin-tab", Recipient(user_id="admin-1", role="admin"))

    partner.add_to_cart("partner-1", "prod-tee", 2)
    partner.add_to_cart("partner-1", "prod-cap", 1)
    totals = partner.cart_totals("partner-1")
    print(f"Cart: subtotal={totals.subtotal} shipping={totals.shipping} tax={totals.tax} total={totals.total}")

    section("ACTION: partner-1 checks out")
    order = await partner.checkout("partner-1")
    await settle_all(partner, admin)

    print(f"Order {order.id}: {order.status}, total {order.totals.total}")
    print("\nAdmin inbox:")
    for notification in admin.notifications.inbox():
        print(f"  [{notification.type}] {notification.title}: {notification.message}")
    print("\nPartner inbox:")
    for notification in partner.notifications.inbox():
        print(f"  [{notification.type}] {notification.title}: {notification.message}")

    await partner.stop()
    await admin.stop()
    return order


async def run_concurrent_demo():
    """
    Two devices race for the same product.

    Both carts hold 3 units of a product with stock 5. The remote
    compare-and-set reservation makes sure no more than 5 are sold.
    """
    banner("SYNC ENGINE DEMO: Concurrent Checkout")

    server = new_server()
    alice = await new_client(server, "alice-laptop", Recipient(user_id="alice"))
    bob = await new_client(server, "bob-phone", Recipient(user_id="bob"))

    alice.add_to_cart("alice", "prod-hoodie", 3)
    bob.add_to_cart("bob", "prod-hoodie", 3)

    section("ACTION: both check out at the same moment")
    orders = await asyncio.gather(alice.checkout("alice"), bob.checkout("bob"))
    await settle_all(alice, bob)

    sold = sum(line.quantity for order in orders for line in order.items)
    for order in orders:
        print(f"  {order.user_id}: {sum(line.quantity for line in order.items)} unit(s)")
    print(f"\nTotal sold: {sold} (stock was 5)")
    print(f"Remote stock now: {server.document('products', 'prod-hoodie')['stock']}")

    await alice.stop()
    await bob.stop()
    return orders


async def run_recovery_demo():
    """
    The local snapshot gets corrupted and is restored from a backup.
    """
    banner("SYNC ENGINE DEMO: Backup & Recovery")

    server = new_server()
    client = await new_client(server, "admin-tab", Recipient(user_id="admin-1", role="admin"))

    backup = client.create_backup()
    print(f"Backup taken at {backup.timestamp.isoformat()} ({len(backup.data['products'])} products)")

    section("ACTION: corrupting the local snapshot")
    client.storage.set_item(client.store.key, '{"products": "oops"')
    intact = await client.backups.check_integrity()
    await settle_all(client)

    print(f"Integrity check passed: {intact}")
    print("Products after recovery:")
    print_stock(client)
    print("\nInbox:")
    for notification in client.notifications.inbox():
        print(f"  [{notification.type}] {notification.message}")

    await client.stop()
    return client.store.get_products()


async def run_offline_demo():
    """
    A client loses its connection, keeps working and catches up afterwards.
    """
    banner("SYNC ENGINE DEMO: Offline Checkout")

    server = new_server()
    client = await new_client(server, "partner-tab", Recipient(user_id="partner-1"))
    client.add_to_cart("partner-1", "prod-tote", 2)

    section("ACTION: connection drops, partner checks out anyway")
    client.remote.disconnect()
    order = await client.checkout("partner-1")
    print(f"Order {order.id} placed locally, sync status: {client.adapter.status.value}")
    print(f"Deferred items in outbox: {len(client.adapter.outbox)}")
    print(f"Remote stock still: {server.document('products', 'prod-tote')['stock']}")

    section("ACTION: connection returns")
    client.remote.reconnect()
    await client.adapter.reconcile()
    await settle_all(client)

    print(f"Sync status: {client.adapter.status.value}")
    print(f"Remote stock now: {server.document('products', 'prod-tote')['stock']}")
    print(f"Order on server: {server.document('orders', order.id) is not None}")

    await client.stop()
    return order


SCENARIOS = {
    "checkout": run_checkout_demo,
    "concurrent": run_concurrent_demo,
    "recovery": run_recovery_demo,
    "offline": run_offline_demo,
}


def run_scenario(name: str) -> None:
    configure_logging()
    if name == "all":
        for scenario in SCENARIOS.values():
            asyncio.run(scenario())
        return
    asyncio.run(SCENARIOS[name]())
