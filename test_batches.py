#!/usr/bin/env python3
"""
Batch creation, ledger registration and the dashboard listings
"""
import pytest

from errors import AuthenticationError, NotFoundError, PermissionDeniedError, ValidationError
from schemas import BatchStatus, HandoffEventType, LedgerMirrorStatus, UserRole
from conftest import PASSWORD, run


def test_create_batch_records_harvest(services, make_user, batch_fields):
    farmer = make_user(UserRole.FARMER, verified=False)

    creation = run(services.batches.create_batch(batch_fields, farmer.id))
    batch = creation.batch

    assert batch.batch_number.startswith("BATCH_TOMATO_")
    assert batch.status == BatchStatus.HARVESTED
    assert batch.current_holder_id == farmer.id
    assert batch.producer_id == farmer.id
    assert batch.quantity == 100
    assert batch.qr_code.startswith("data:image/png;base64,")
    assert batch.producer.name == farmer.name

    history = services.batches.get_batch_history(batch.id)
    assert len(history) == 1
    assert history[0].event_type == HandoffEventType.HARVEST.value
    assert history[0].from_user_id is None
    assert history[0].to_user_id == farmer.id


def test_batch_numbers_are_unique(services, make_user, batch_fields):
    farmer = make_user()
    numbers = {run(services.batches.create_batch(batch_fields, farmer.id)).batch.batch_number for _ in range(3)}
    assert len(numbers) == 3


@pytest.mark.parametrize("role", [UserRole.DISTRIBUTOR, UserRole.RETAILER, UserRole.CONSUMER])
def test_only_farmers_create_batches(services, make_user, batch_fields, role):
    user = make_user(role)
    with pytest.raises(PermissionDeniedError):
        run(services.batches.create_batch(batch_fields, user.id))
    assert services.batches.counts()["batches"] == 0


@pytest.mark.parametrize(
    "overrides",
    [{"quantity": 0}, {"price": -1}, {"produce": ""}, {"farm_location": "   "}],
)
def test_invalid_batch_fields(services, make_user, batch_fields, overrides):
    farmer = make_user()
    with pytest.raises(ValidationError):
        run(services.batches.create_batch({**batch_fields, **overrides}, farmer.id))


def test_verified_farmer_registers_batch_on_ledger(services, ledger, make_user, batch_fields):
    farmer = make_user(UserRole.FARMER, verified=True)

    creation = run(services.batches.create_batch(batch_fields, farmer.id, password=PASSWORD))

    assert creation.ledger.status == LedgerMirrorStatus.CONFIRMED
    assert creation.batch.blockchain_id == 1
    assert creation.batch.registration_tx_hash == creation.ledger.tx_hash

    stored = services.batches.get_batch(creation.batch.id)
    assert stored.blockchain_id == 1
    assert stored.registration_tx_hash == creation.ledger.tx_hash
    assert ledger.call_names() == ["registerProduct"]


def test_unverified_farmer_skips_ledger(services, ledger, make_user, batch_fields):
    farmer = make_user(UserRole.FARMER, verified=False)

    creation = run(services.batches.create_batch(batch_fields, farmer.id, password=PASSWORD))

    assert creation.ledger.status == LedgerMirrorStatus.SKIPPED
    assert creation.batch.blockchain_id is None
    assert ledger.calls == []


def test_ledger_failure_keeps_batch(services, ledger, make_user, batch_fields):
    farmer = make_user()
    ledger.fail = True

    creation = run(services.batches.create_batch(batch_fields, farmer.id, password=PASSWORD))

    assert creation.ledger.status == LedgerMirrorStatus.FAILED
    assert creation.ledger.error is not None
    stored = services.batches.get_batch(creation.batch.id)
    assert stored.blockchain_id is None
    assert stored.registration_tx_hash is None


def test_wrong_password_creates_nothing(services, make_user, batch_fields):
    farmer = make_user()
    with pytest.raises(AuthenticationError):
        run(services.batches.create_batch(batch_fields, farmer.id, password="nope-nope"))
    assert services.batches.counts()["batches"] == 0


def test_lookup_by_id_and_number(services, make_user, batch_fields):
    farmer = make_user()
    batch = run(services.batches.create_batch(batch_fields, farmer.id)).batch

    assert services.batches.get_batch_by_number(batch.batch_number).id == batch.id
    with pytest.raises(NotFoundError):
        services.batches.get_batch(batch.id + 100)
    with pytest.raises(NotFoundError):
        services.batches.get_batch_by_number("BATCH_MISSING")
    with pytest.raises(NotFoundError):
        services.batches.get_batch_history(batch.id + 100)


def test_listings_follow_custody(services, make_user, batch_fields):
    farmer = make_user(UserRole.FARMER)
    distributor = make_user(UserRole.DISTRIBUTOR)
    retailer = make_user(UserRole.RETAILER)
    consumer = make_user(UserRole.CONSUMER)

    kept = run(services.batches.create_batch(batch_fields, farmer.id)).batch
    moved = run(services.batches.create_batch({**batch_fields, "produce": "Onion"}, farmer.id)).batch
    run(services.handoff.record_handoff(moved.id, farmer.id, distributor.id, {"price": 20, "location": "Depot"}))

    assert {b.id for b in services.batches.list_produced_by(farmer.id)} == {kept.id, moved.id}
    assert [b.id for b in services.batches.list_held_by(farmer.id)] == [kept.id]
    assert [b.id for b in services.batches.list_held_by(distributor.id)] == [moved.id]

    assert [b.id for b in services.batches.list_available_for(distributor)] == [kept.id]
    assert [b.id for b in services.batches.list_available_for(retailer)] == [moved.id]
    assert services.batches.list_available_for(consumer) == []
    assert services.batches.list_available_for(farmer) == []
    assert len(services.batches.list_all()) == 2


def test_counts_track_ledger_coverage(services, make_user, batch_fields):
    farmer = make_user()
    run(services.batches.create_batch(batch_fields, farmer.id, password=PASSWORD))
    run(services.batches.create_batch(batch_fields, farmer.id))

    assert services.batches.counts() == {
        "batches": 2,
        "batchesOnChain": 1,
        "events": 2,
        "eventsOnChain": 0,
    }
