from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chiccanto.core.database import Base
from chiccanto.models.kv_entry import KVEntry
from chiccanto.services.activation import ActivationRegistry, CodeNotFoundError
from chiccanto.services.cards import update_card
from chiccanto.services.kv_store import SQLKVStore
from chiccanto.services.rate_limit import FixedWindowRateLimiter


def main() -> None:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    store = SQLKVStore(TestingSessionLocal)
    registry = ActivationRegistry(store)

    first = registry.assign(order_id="ETSY-1001", card_key="men-novice1", quantity=1, buyer_name="Ana")
    again = registry.assign(order_id="ETSY-1001", card_key="men-novice1", quantity=1)
    assert not first.existing and again.existing
    assert first.codes == again.codes, (first.codes, again.codes)
    code = first.codes[0]
    assert code.startswith("CC-MEN-STD1-"), code

    redeemed = registry.redeem(code, {"product_id": "default"})
    replay = registry.redeem(code)
    assert not redeemed.existing and replay.existing
    card = redeemed.cards[0]
    assert [c["token"] for c in replay.cards] == [card["token"]]

    configured = update_card(
        store,
        card["token"],
        {"configured": True, "choice": "gold", "reveal_amount": 50},
        setup_key=card["setup_key"],
    )
    assert configured["configured"] and configured["choice"] == "gold"

    try:
        registry.redeem("CC-XXXX-0000")
    except CodeNotFoundError:
        pass
    else:
        raise AssertionError("unknown code redeemed")

    order = registry.lookup_order("ETSY-1001")
    assert order["tokens"] == [card["token"]], order
    assert order["redeemed_codes"] == [code], order

    limiter = FixedWindowRateLimiter(store, limit=2, window_s=600)
    assert limiter.hit("redeem:verify").allowed
    assert limiter.hit("redeem:verify").allowed
    assert not limiter.hit("redeem:verify").allowed

    db = TestingSessionLocal()
    try:
        rows = db.query(KVEntry).all()
        assert any(r.key == f"ac:{code}" for r in rows)
        assert any(r.key.startswith("rl:redeem:verify:") and r.expires_at for r in rows)
    finally:
        db.close()


if __name__ == "__main__":
    main()
    print("OK")
