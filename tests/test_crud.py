import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from pydantic import ValidationError
from pymongo.errors import OperationFailure

from mongocrud import CrudService, DatabaseError, DuplicateConstraintError, is_collision

from tests.app.services.doodad_service import DoodadService

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def connected(registry):
    registry.connect()
    await asyncio.wait_for(registry.wait_until_ready(), 1)
    return registry


@pytest.fixture
def clock(monkeypatch):
    """Deterministic, strictly increasing utc_now for the crud module"""
    ticks = []

    def fake_now():
        ticks.append(T0 + timedelta(seconds=len(ticks)))
        return ticks[-1]

    monkeypatch.setattr('mongocrud.services.crud.utc_now', fake_now)
    return ticks


def test_is_collision():
    assert is_collision(DuplicateConstraintError())
    assert is_collision(OperationFailure('dup', 11000))
    assert not is_collision(DatabaseError(message='nope'))
    assert not is_collision(ValueError())


@pytest.mark.asyncio
async def test_create(registry):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat', 'key': 'one'})
    assert isinstance(doodad.id, ObjectId)
    assert doodad.name == 'Pat'


@pytest.mark.asyncio
async def test_create_reports_and_raises_on_collision(registry, reports):
    service = DoodadService(await connected(registry))
    await service._create({'key': 'same'})
    with pytest.raises(DuplicateConstraintError):
        await service._create({'key': 'same'})
    assert [report.message for report in reports.get()] == ['Failed to create new model: doodad']


@pytest.mark.asyncio
async def test_create_with_retry_stops_after_three_attempts(registry, reports):
    service = DoodadService(await connected(registry))
    await service._create({'key': 'stuck'})
    attempts = []

    def revise(data, attempt):
        attempts.append(attempt)
        return {**data, 'key': 'stuck'}

    with pytest.raises(DuplicateConstraintError):
        await service._create_with_retry({'name': 'Pat'}, revise)

    assert attempts == [0, 1, 2]
    messages = [report.message for report in reports.get()]
    assert messages == ['All attempts failed to create model due to collisions! Model: doodad']


@pytest.mark.asyncio
async def test_create_with_retry_honours_retry_count(registry):
    service = DoodadService(await connected(registry))
    await service._create({'key': 'stuck'})
    attempts = []

    def revise(data, attempt):
        attempts.append(attempt)
        return {'key': 'stuck'}

    service.create_retry_count = 5
    with pytest.raises(DuplicateConstraintError):
        await service._create_with_retry({}, revise)
    assert attempts == [0, 1, 2, 3, 4]

    attempts.clear()
    with pytest.raises(DuplicateConstraintError):
        await service._create_with_retry({}, revise, max_attempts=0)
    assert attempts == [0]


@pytest.mark.asyncio
async def test_create_with_retry_succeeds_on_later_attempt(registry, reports):
    service = DoodadService(await connected(registry))
    await service._create({'key': 'taken'})

    async def revise(data, attempt):
        return {**data, 'key': 'taken' if attempt == 0 else f'free-{attempt}'}

    doodad = await service._create_with_retry({'name': 'Pat'}, revise)
    assert doodad.key == 'free-1'
    assert reports.get() == []


@pytest.mark.asyncio
async def test_create_with_retry_stops_on_other_errors(registry, reports):
    service = DoodadService(await connected(registry))
    attempts = []

    def revise(data, attempt):
        attempts.append(attempt)
        return data

    service.model.collection.fail_next = OperationFailure('disk full', 14031)
    with pytest.raises(DatabaseError) as info:
        await service._create_with_retry({'key': 'k'}, revise)

    assert not isinstance(info.value, DuplicateConstraintError)
    assert attempts == [0]
    assert [report.message for report in reports.get()] == ['Failed to create new model: doodad']


@pytest.mark.asyncio
async def test_concurrent_creates_resolve_their_own_collisions(registry):
    service = DoodadService(await connected(registry))
    attempts = []

    def revise(data, attempt):
        attempts.append(attempt)
        return {**data, 'key': f"shared-{attempt}" if attempt == 0 else f"{data['name']}-{attempt}"}

    first, second = await asyncio.gather(
        service._create_with_retry({'name': 'a'}, revise),
        service._create_with_retry({'name': 'b'}, revise),
    )
    assert first.key != second.key
    assert sorted(attempts) == [0, 0, 1]


@pytest.mark.asyncio
async def test_public_wrapper_generates_keys(registry):
    service = DoodadService(await connected(registry))
    doodad = await service.create_doodad({'name': 'Pat'})
    assert doodad.key.startswith('doodad_local_')


@pytest.mark.asyncio
async def test_retrieve_by_any_identifier_shape(registry):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat'})
    public_id = registry.get_public_id(doodad.id, 'dood')
    legacy_id = 'DD' + public_id.rsplit('_', 1)[1]

    for mixed_id in (doodad.id, str(doodad.id), public_id, legacy_id):
        found = await service._retrieve(mixed_id)
        assert found.id == doodad.id


@pytest.mark.asyncio
async def test_retrieve_returns_none_without_querying_for_bad_ids(registry):
    service = DoodadService(await connected(registry))
    for mixed_id in (None, '', 'nope', 'xx_2dcagW31wsvM2hkoB', {}, True):
        assert await service._retrieve(mixed_id) is None
    assert await service._retrieve(ObjectId()) is None


@pytest.mark.asyncio
async def test_retrieve_conceals_deleted(registry):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat'})
    await service._delete(doodad)

    assert await service._retrieve(doodad.id) is None
    service.conceal_dead_resources = False
    assert (await service._retrieve(doodad.id)).status == 'dead'


@pytest.mark.asyncio
async def test_find_conceals_deleted_unless_asked(registry):
    service = DoodadService(await connected(registry))
    pat = await service._create({'name': 'Pat', 'status': 'active'})
    await service._create({'name': 'Sam'})
    gone = await service._create({'name': 'Gone', 'status': 'active'})
    await service._delete(gone)

    names = sorted(doodad.name for doodad in await service._find())
    assert names == ['Pat', 'Sam']
    assert [d.name for d in await service._find({'status': 'active'})] == ['Pat']
    assert await service._find({'status': 'dead'}) == []
    assert [d.name for d in await service._find({'status': 'dead'}, {'conceal': False})] == ['Gone']
    assert len(await service._find({}, {'conceal': False})) == 3

    existing_and = {'$and': [{'name': 'Pat'}], 'status': {'$in': ['active', 'dead']}}
    found = await service._find(existing_and)
    assert [d.id for d in found] == [pat.id]
    assert existing_and == {'$and': [{'name': 'Pat'}], 'status': {'$in': ['active', 'dead']}}


@pytest.mark.asyncio
async def test_find_shaping(registry):
    service = DoodadService(await connected(registry))
    for name in ('d', 'a', 'c', 'b'):
        await service._create({'name': name})

    found = await service._find({}, {'sort': 'name', 'skip': 1, 'take': 2, 'fields': 'name'})
    assert [d.name for d in found] == ['b', 'c']
    assert 'created' not in found[0]


@pytest.mark.asyncio
async def test_count(registry):
    service = DoodadService(await connected(registry))
    for name in ('a', 'b', 'c'):
        await service._create({'name': name})
    await service._delete(await service._create({'name': 'gone'}))

    assert await service._count() == 3
    assert await service._count({}, {'conceal': False}) == 4
    assert await service._count({'name': 'a'}) == 1


@pytest.mark.asyncio
async def test_find_and_count_report_failures(registry, reports):
    service = DoodadService(await connected(registry))
    collection = service.model.collection

    collection.fail_next = OperationFailure('timeout', 50)
    with pytest.raises(DatabaseError):
        await service._find({'name': 'Pat'})

    collection.fail_next = OperationFailure('timeout', 50)
    with pytest.raises(DatabaseError):
        await service._count()

    reported = reports.get()
    assert [report.message for report in reported] == [
        'Failed to find models: doodad',
        'Failed to count models: doodad',
    ]
    assert reported[0].context == ({'name': 'Pat', 'status': {'$ne': 'dead'}},)


@pytest.mark.asyncio
async def test_find_and_count_report_invalid_options(registry, reports):
    service = DoodadService(await connected(registry))

    with pytest.raises(ValidationError):
        await service._find({}, {'skip': -1})
    with pytest.raises(ValidationError):
        await service._count({'name': 'Pat'}, {'take': 'x'})

    reported = reports.get()
    assert [report.message for report in reported] == [
        'Failed to find models: doodad',
        'Failed to count models: doodad',
    ]
    assert reported[1].context == ({'name': 'Pat'},)
    assert all(isinstance(report.error, ValidationError) for report in reported)


@pytest.mark.asyncio
async def test_update_applies_only_modifiable_keys(registry, clock):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat', 'key': 'original'})

    await service._update(doodad, {'name': 'Sam', 'key': 'hijacked', 'owner': 'someone'})

    stored = await service._retrieve(doodad.id)
    assert stored.name == 'Sam'
    assert stored.key == 'original'
    assert stored.owner is None
    assert stored.updated == clock[-1]


@pytest.mark.asyncio
async def test_update_ignores_non_mapping_data(registry, clock):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat'})
    await service._update(doodad, ['name'])
    assert doodad.name == 'Pat'
    assert doodad.updated == clock[0]


@pytest.mark.asyncio
async def test_update_reports_failures(registry, reports):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat'})
    service.model.collection.fail_next = OperationFailure('write conflict', 112)

    with pytest.raises(DatabaseError):
        await service._update(doodad, {'name': 'Sam'})
    assert [report.message for report in reports.get()] == ['Failed to update model: doodad']


@pytest.mark.asyncio
async def test_delete_is_idempotent(registry, clock):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat'})

    await service._delete(doodad)
    first_stamp = doodad.updated
    await service._delete(doodad)

    assert doodad.status == 'dead'
    assert doodad.updated > first_stamp
    service.conceal_dead_resources = False
    stored = await service._retrieve(doodad.id)
    assert stored.status == 'dead'
    assert stored.updated == doodad.updated


@pytest.mark.asyncio
async def test_custom_deleted_status(registry):
    service = DoodadService(await connected(registry))
    service.deleted_status = 'archived'
    doodad = await service._create({'name': 'Pat'})
    await service._delete(doodad)

    assert doodad.status == 'archived'
    assert await service._find() == []


@pytest.mark.asyncio
async def test_delete_permanently(registry, reports):
    service = DoodadService(await connected(registry))
    doodad = await service._create({'name': 'Pat'})

    removed = await service._delete_permanently(doodad)
    assert removed is doodad
    service.conceal_dead_resources = False
    assert await service._retrieve(doodad.id) is None

    service.model.collection.fail_next = OperationFailure('not primary', 10107)
    with pytest.raises(DatabaseError):
        await service._delete_permanently(doodad)
    assert [report.message for report in reports.get()] == ['Failed to permanently remove model: doodad']


def test_service_without_registry_uses_own_codec():
    service = CrudService()
    object_id = ObjectId()
    assert service.get_object_id(str(object_id)) == object_id
    assert service.get_object_id('nope') is None
