import pytest

from storerate import services
from storerate.database import Rating
from storerate.errors import AuthError, ConflictError, NotFoundError, ValidationError
from storerate.models.user import Role
from storerate.security import verify_password

PASSWORD = "Secret#Pass1"


def _user_payload(**overrides):
    data = {
        "name": "Alexandra Testington",
        "email": "alex@example.com",
        "password": PASSWORD,
        "address": "12 Elm Road",
    }
    data.update(overrides)
    return data


def test_create_user_defaults_to_user_role_and_hashes_password(db):
    user = services.create_user(db, _user_payload())
    assert user.role == Role.USER.value
    assert user.password_hash != PASSWORD
    assert verify_password(PASSWORD, user.password_hash)
    assert user.created_at is not None


def test_create_user_name_length_bounds(db):
    with pytest.raises(ValidationError) as exc:
        services.create_user(db, _user_payload(name="Short"))
    assert "at least 20" in exc.value.message
    assert exc.value.field == "name"

    user = services.create_user(db, _user_payload(name="x" * 20))
    assert user.name == "x" * 20

    with pytest.raises(ValidationError) as exc:
        services.create_user(db, _user_payload(name="y" * 61, email="other@example.com"))
    assert "at most 60" in exc.value.message


@pytest.mark.parametrize(
    "password, fragment",
    [
        ("Ab#1", "at least 8"),
        ("Abcdefgh#12345678", "at most 16"),
        ("abcdefg#1", "uppercase"),
        ("abcdefg!\u00c9", "uppercase"),
        ("Abcdefgh1", "special character"),
    ],
)
def test_create_user_password_policy(db, password, fragment):
    with pytest.raises(ValidationError) as exc:
        services.create_user(db, _user_payload(password=password))
    assert fragment in exc.value.message
    assert services.platform_stats(db)["total_users"] == 0


def test_create_user_rejects_bad_email_and_long_address(db):
    with pytest.raises(ValidationError) as exc:
        services.create_user(db, _user_payload(email="not-an-email"))
    assert exc.value.message == "Invalid email address"

    with pytest.raises(ValidationError) as exc:
        services.create_user(db, _user_payload(address="a" * 401))
    assert "400" in exc.value.message


def test_create_user_duplicate_email(db):
    services.create_user(db, _user_payload())
    with pytest.raises(ConflictError):
        services.create_user(db, _user_payload(name="Another Person Entirely"))
    assert services.platform_stats(db)["total_users"] == 1


def test_create_user_maps_unique_violation_to_conflict(db, monkeypatch):
    services.create_user(db, _user_payload())
    monkeypatch.setattr(services, "get_user_by_email", lambda session, email: None)

    with pytest.raises(ConflictError) as exc:
        services.create_user(db, _user_payload(name="Another Person Entirely"))
    assert exc.value.message == "Email already exists"
    assert exc.value.field == "email"
    assert services.platform_stats(db)["total_users"] == 1


def test_email_lookup_is_exact(db):
    services.create_user(db, _user_payload())
    assert services.get_user_by_email(db, "alex@example.com") is not None
    assert services.get_user_by_email(db, "ALEX@example.com") is None
    assert services.get_user_by_email(db, "missing@example.com") is None


def test_update_password(db, make_user):
    user = make_user()
    with pytest.raises(AuthError):
        services.update_password(db, user.id, "Wrong#Pass1", "Newer#Pass1")

    with pytest.raises(ValidationError):
        services.update_password(db, user.id, PASSWORD, "weak")

    services.update_password(db, user.id, PASSWORD, "Newer#Pass1")
    refreshed = services.get_user(db, user.id)
    assert verify_password("Newer#Pass1", refreshed.password_hash)
    assert not verify_password(PASSWORD, refreshed.password_hash)


def test_list_users_filters_and_sorting(db, make_user):
    alice = make_user(name="Alice Wonderland Person", email="alice@shop.io")
    bob = make_user(role=Role.OWNER, name="Bob Builder Store Owner", email="bob@mail.io")
    carol = make_user(role=Role.ADMIN, name="Carol Admin Superuser", email="carol@mail.io")

    default = services.list_users(db)
    assert [u["id"] for u in default] == [carol.id, bob.id, alice.id]

    by_search = services.list_users(db, search="MAIL.IO")
    assert {u["id"] for u in by_search} == {bob.id, carol.id}

    by_name = services.list_users(db, search="wonder")
    assert [u["id"] for u in by_name] == [alice.id]

    owners = services.list_users(db, role="owner")
    assert [u["id"] for u in owners] == [bob.id]
    assert len(services.list_users(db, role="all")) == 3

    by_email_desc = services.list_users(db, sort_by="email", order="desc")
    assert [u["email"] for u in by_email_desc] == ["carol@mail.io", "bob@mail.io", "alice@shop.io"]

    by_name_asc = services.list_users(db, sort_by="name")
    assert [u["id"] for u in by_name_asc] == [alice.id, bob.id, carol.id]

    with pytest.raises(ValidationError):
        services.list_users(db, sort_by="password_hash")
    with pytest.raises(ValidationError):
        services.list_users(db, role="superuser")


def test_list_users_annotates_owner_average(db, make_user, make_store):
    owner = make_user(role=Role.OWNER)
    rater = make_user()
    store = make_store(owner=owner)
    services.upsert_rating(db, rater.id, store.id, 3)

    rows = {row["id"]: row for row in services.list_users(db)}
    assert rows[owner.id]["average_rating"] == 3.0
    assert "average_rating" not in rows[rater.id]
    assert services.get_user_detail(db, owner.id)["average_rating"] == 3.0


def test_get_user_detail_unknown(db):
    with pytest.raises(NotFoundError):
        services.get_user_detail(db, 999)


def test_create_store_validation(db, make_user):
    with pytest.raises(ValidationError) as exc:
        services.create_store(
            db, {"name": "Short", "email": "s@example.com", "address": "Somewhere"}
        )
    assert "at least 20" in exc.value.message

    with pytest.raises(ValidationError) as exc:
        services.create_store(
            db, {"name": "Perfectly Valid Store Name", "email": "s@example.com", "address": ""}
        )
    assert exc.value.field == "address"

    regular = make_user()
    with pytest.raises(ValidationError) as exc:
        services.create_store(
            db,
            {
                "name": "Perfectly Valid Store Name",
                "email": "s@example.com",
                "address": "Somewhere",
                "owner_id": regular.id,
            },
        )
    assert exc.value.field == "ownerId"


def test_create_store_without_owner(db):
    store = services.create_store(
        db, {"name": "Unowned Corner Shop Ltd", "email": "corner@example.com", "address": "Main St"}
    )
    assert store.owner_id is None


def test_upsert_replaces_existing_rating(db, make_user, make_store):
    user = make_user()
    store = make_store()
    first = services.upsert_rating(db, user.id, store.id, 5)
    second = services.upsert_rating(db, user.id, store.id, 2)

    assert second.id == first.id
    assert second.rating == 2
    rows = db.query(Rating).filter(Rating.user_id == user.id, Rating.store_id == store.id).all()
    assert len(rows) == 1
    assert rows[0].rating == 2
    assert services.get_rating(db, user.id, store.id).rating == 2


def test_upsert_without_native_upsert_updates_in_place(db, make_user, make_store, monkeypatch):
    monkeypatch.setattr(services, "_UPSERT_INSERTS", {})
    user = make_user()
    store = make_store()

    first = services.upsert_rating(db, user.id, store.id, 5)
    first_id, first_created = first.id, first.created_at
    second = services.upsert_rating(db, user.id, store.id, 2)

    assert second.id == first_id
    assert second.created_at == first_created
    rows = db.query(Rating).filter(Rating.user_id == user.id, Rating.store_id == store.id).all()
    assert [r.rating for r in rows] == [2]


@pytest.mark.parametrize("value", [0, 6, 3.5, "abc", True, None])
def test_upsert_rejects_invalid_values(db, make_user, make_store, value):
    user = make_user()
    store = make_store()
    with pytest.raises(ValidationError):
        services.upsert_rating(db, user.id, store.id, value)
    assert services.get_rating(db, user.id, store.id) is None


def test_upsert_unknown_store(db, make_user):
    user = make_user()
    with pytest.raises(NotFoundError):
        services.upsert_rating(db, user.id, 404, 3)


def test_average_rating(db, make_user, make_store):
    store = make_store()
    assert services.average_rating(db, store.id) == 0
    services.upsert_rating(db, make_user().id, store.id, 5)
    services.upsert_rating(db, make_user().id, store.id, 4)
    assert services.average_rating(db, store.id) == 4.5


def test_list_stores_annotations_and_sorting(db, make_user, make_store):
    viewer = make_user()
    other = make_user()
    zeta = make_store(name="Zeta Hardware Emporium", address="5 Oak Lane, Rivertown")
    alpha = make_store(name="Alpha Bakery And Coffee", address="9 Pine Road, Hillview")
    middle = make_store(name="Middle Books And Music", address="3 Oak Lane, Rivertown")

    services.upsert_rating(db, viewer.id, zeta.id, 2)
    services.upsert_rating(db, other.id, zeta.id, 4)
    services.upsert_rating(db, other.id, alpha.id, 5)

    rows = services.list_stores(db, viewer_id=viewer.id)
    by_id = {r["id"]: r for r in rows}
    assert by_id[zeta.id]["average_rating"] == 3.0
    assert by_id[zeta.id]["my_rating"] == 2
    assert by_id[alpha.id]["average_rating"] == 5.0
    assert "my_rating" not in by_id[alpha.id]
    assert by_id[middle.id]["average_rating"] == 0

    by_rating = services.list_stores(db, sort_by="rating")
    assert [r["id"] for r in by_rating] == [alpha.id, zeta.id, middle.id]

    by_name = services.list_stores(db, sort_by="name")
    assert [r["id"] for r in by_name] == [alpha.id, middle.id, zeta.id]

    by_address = services.list_stores(db, address="oak lane")
    assert {r["id"] for r in by_address} == {zeta.id, middle.id}

    by_search = services.list_stores(db, search="BAKERY")
    assert [r["id"] for r in by_search] == [alpha.id]

    with pytest.raises(ValidationError):
        services.list_stores(db, sort_by="owner")


def test_list_ratings_for_store_includes_authors(db, make_user, make_store):
    store = make_store()
    first = make_user(name="First Rater Of This Store")
    second = make_user(name="Second Rater Of This Store")
    services.upsert_rating(db, first.id, store.id, 4)
    services.upsert_rating(db, second.id, store.id, 1)

    ratings = services.list_ratings_for_store(db, store.id)
    assert [r.user.name for r in ratings] == [
        "Second Rater Of This Store",
        "First Rater Of This Store",
    ]


def test_owner_rollup(db, make_user, make_store):
    owner = make_user(role=Role.OWNER)
    rated = make_store(owner=owner)
    unrated = make_store(owner=owner)
    make_store()
    high = make_user(name="Generous Reviewer Person")
    low = make_user(name="Critical Reviewer Person")
    services.upsert_rating(db, high.id, rated.id, 5)
    services.upsert_rating(db, low.id, rated.id, 3)

    rollup = services.owner_rollup(db, owner.id)
    assert len(rollup) == 2
    by_store = {entry["store_id"]: entry for entry in rollup}
    assert by_store[rated.id]["average_rating"] == 4.0
    assert by_store[rated.id]["store_name"] == rated.name
    assert sorted(r["user_name"] for r in by_store[rated.id]["ratings"]) == [
        "Critical Reviewer Person",
        "Generous Reviewer Person",
    ]
    assert by_store[unrated.id]["average_rating"] == 0
    assert by_store[unrated.id]["ratings"] == []


def test_owner_rollup_without_stores(db, make_user):
    owner = make_user(role=Role.OWNER)
    assert services.owner_rollup(db, owner.id) == []
    assert services.owner_rollup(db, 12345) == []


def test_platform_stats(db, make_user, make_store):
    user = make_user()
    make_user(role=Role.ADMIN)
    store = make_store()
    make_store()
    services.upsert_rating(db, user.id, store.id, 4)
    services.upsert_rating(db, user.id, store.id, 5)

    assert services.platform_stats(db) == {
        "total_users": 2,
        "total_stores": 2,
        "total_ratings": 1,
    }


def test_seed_demo_data_is_idempotent(db):
    from storerate.seed import seed_demo_data

    assert seed_demo_data(db) is True
    assert seed_demo_data(db) is False
    assert services.platform_stats(db) == {
        "total_users": 3,
        "total_stores": 2,
        "total_ratings": 2,
    }
    owner = services.get_user_by_email(db, "owner@store.com")
    assert [entry["average_rating"] for entry in services.owner_rollup(db, owner.id)] == [5.0, 4.0]
