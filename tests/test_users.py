import pytest
from pymongo.errors import DuplicateKeyError

from errors import PermissionDeniedError, PreconditionError
from schemas import User
from users import (
    create_user_profile,
    distance_km,
    get_all_users,
    get_user,
    is_within_service_area,
    update_user_role,
)


def test_distance_km():
    assert distance_km(32.5149, -117.0382, 32.5149, -117.0382) == 0
    # Tijuana to Mexicali
    assert 140 < distance_km(32.5149, -117.0382, 32.6245, -115.4523) < 155


@pytest.mark.parametrize("lat, lon, inside", [
    (32.5149, -117.0382, True),   # downtown
    (32.3661, -117.0618, True),   # Rosarito
    (31.8667, -116.5964, False),  # Ensenada
    (19.4326, -99.1332, False),   # CDMX
])
def test_service_area(lat, lon, inside):
    assert is_within_service_area(lat, lon) is inside


def test_create_user_profile_defaults(db):
    profile = User(name="Ana", email="ana@example.com", role="admin", rating=4.5, favorites=["x"])
    user = create_user_profile(db, "uid-ana", profile)

    assert user.id == "uid-ana"
    assert user.role == "user"
    assert user.favorites == []
    assert user.rating is None
    assert user.rating_count == 0
    assert user.created_at is not None


def test_duplicate_profile_is_not_a_store_failure(db, make_user, errors, published):
    make_user("ana")
    with pytest.raises(DuplicateKeyError):
        create_user_profile(db, "ana", User(name="Ana", email="otra@example.com"), errors)
    assert published == []


def test_rating_is_undefined_without_votes():
    assert User(name="A", email="a@example.com", rating=3.0, rating_count=0).rating is None
    assert User(name="A", email="a@example.com", rating=3.0, rating_count=2).rating == 3.0


def test_get_user(db, make_user):
    make_user("ana")
    assert get_user(db, "ana").email == "ana@example.com"
    assert get_user(db, "ghost") is None


def test_admin_can_change_roles(db, make_user):
    make_user("boss", role="admin")
    make_user("ana")
    update_user_role(db, "boss", "ana", "admin")
    assert get_user(db, "ana").role == "admin"


def test_non_admin_cannot_change_roles(db, make_user):
    make_user("ana")
    make_user("luis")
    with pytest.raises(PermissionDeniedError):
        update_user_role(db, "ana", "luis", "admin")
    assert get_user(db, "luis").role == "user"


def test_role_change_needs_target(db, make_user):
    make_user("boss", role="admin")
    with pytest.raises(PreconditionError):
        update_user_role(db, "boss", "ghost", "admin")


def test_get_all_users_skips_malformed(db, make_user):
    make_user("ana")
    db["user"].insert_one({"_id": "broken", "name": "Sin correo"})
    assert [u.id for u in get_all_users(db)] == ["ana"]
