import uuid

from storefront.core.idempotency import advisory_lock_key, dedupe_key, new_salt


def test_dedupe_key_is_deterministic():
    order_id = uuid.uuid4()
    first = dedupe_key(order_id, "order_status_confirmed", "ada@example.com", "order_confirmed")
    second = dedupe_key(order_id, "order_status_confirmed", "ada@example.com", "order_confirmed")
    assert first == second
    assert len(first) == 64


def test_dedupe_key_normalizes_recipient():
    order_id = uuid.uuid4()
    assert dedupe_key(order_id, "order_status_confirmed", "  Ada@Example.COM ", "order_confirmed") == dedupe_key(
        str(order_id), "order_status_confirmed", "ada@example.com", "order_confirmed"
    )


def test_dedupe_key_differs_per_component():
    order_id = uuid.uuid4()
    base = dedupe_key(order_id, "order_status_confirmed", "ada@example.com", "order_confirmed")
    assert base != dedupe_key(uuid.uuid4(), "order_status_confirmed", "ada@example.com", "order_confirmed")
    assert base != dedupe_key(order_id, "admin_new_order", "ada@example.com", "order_confirmed")
    assert base != dedupe_key(order_id, "order_status_confirmed", "bola@example.com", "order_confirmed")
    assert base != dedupe_key(order_id, "order_status_confirmed", "ada@example.com", "admin_new_order")


def test_salt_opts_out_of_deduplication():
    order_id = uuid.uuid4()
    base = dedupe_key(order_id, "order_status_confirmed", "ada@example.com", "order_confirmed")
    salted = dedupe_key(order_id, "order_status_confirmed", "ada@example.com", "order_confirmed", salt=new_salt())
    other = dedupe_key(order_id, "order_status_confirmed", "ada@example.com", "order_confirmed", salt=new_salt())
    assert len({base, salted, other}) == 3


def test_advisory_lock_key_is_stable_signed_64_bit():
    order_id = uuid.uuid4()
    key = advisory_lock_key(order_id)
    assert key == advisory_lock_key(str(order_id))
    assert -(2 ** 63) <= key < 2 ** 63
