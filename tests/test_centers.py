"""
Tests for superadmin center/admin administration and the admin's
center-scoped staff management and child assignment.
"""
import pytest


@pytest.fixture
def superadmin(make_user):
    return make_user("superadmin")


@pytest.fixture
def center_with_admin(client, db, superadmin, headers):
    res = client.post("/api/superadmin/centers", headers=headers(superadmin),
                      json={"name": "Hope Center", "nameEn": "Hope", "address": "Tripoli"})
    assert res.status_code == 201
    center_id = res.json()["center"]["_id"]

    res = client.post("/api/superadmin/create-admin", headers=headers(superadmin),
                      json={"name": "Admin", "email": "admin@hope.ly", "password": "secret123", "centerId": center_id})
    assert res.status_code == 201
    admin = db["user"].find_one({"email": "admin@hope.ly"})
    center = db["center"].find_one({"_id": admin["center"]})
    return center, admin


def test_create_center_requires_name(client, superadmin, headers):
    res = client.post("/api/superadmin/centers", headers=headers(superadmin), json={"address": "x"})
    assert res.status_code == 400
    assert res.json()["message"] == "Center name is required"


def test_admin_bound_to_center(center_with_admin):
    center, admin = center_with_admin
    assert center["admin"] == admin["_id"]
    assert admin["staffId"] == "AD-0001"
    assert admin["emailVerified"] is True


def test_admin_manages_center_specialists(client, db, center_with_admin, headers):
    center, admin = center_with_admin
    res = client.post("/api/admin/create-specialist", headers=headers(admin),
                      json={"name": "Dr. Salma", "email": "salma@hope.ly", "password": "secret123",
                            "specialization": "Articulation"})
    assert res.status_code == 201
    specialist_id = res.json()["specialist"]["id"]

    stored_center = db["center"].find_one({"_id": center["_id"]})
    assert [str(s) for s in stored_center["specialists"]] == [specialist_id]

    res = client.get("/api/admin/specialists", headers=headers(admin))
    assert res.json()["count"] == 1

    res = client.put(f"/api/admin/specialists/{specialist_id}", headers=headers(admin),
                     json={"licenseNumber": "LIC-9"})
    assert res.status_code == 200
    assert db["user"].find_one({"email": "salma@hope.ly"})["licenseNumber"] == "LIC-9"

    stats = client.get("/api/admin/stats", headers=headers(admin)).json()["stats"]
    assert stats["centerSpecialists"] == 1

    res = client.delete(f"/api/admin/specialists/{specialist_id}", headers=headers(admin))
    assert res.status_code == 200
    assert db["center"].find_one({"_id": center["_id"]})["specialists"] == []
    assert db["user"].find_one({"email": "salma@hope.ly"})["center"] is None


def test_remove_specialist_keeps_family_links(client, db, center_with_admin, make_user, make_child, headers):
    center, admin = center_with_admin
    specialist = make_user("specialist", center=center["_id"])
    db["center"].update_one({"_id": center["_id"]}, {"$addToSet": {"specialists": specialist["_id"]}})
    parent = make_user("parent")
    child = make_child(parent, assigned_specialist=specialist["_id"])

    client.delete(f"/api/admin/specialists/{specialist['_id']}", headers=headers(admin))

    assert db["child"].find_one({"_id": child["_id"]})["assignedSpecialist"] == specialist["_id"]
    assert db["user"].find_one({"_id": parent["_id"]})["linkedSpecialist"] == specialist["_id"]


def test_admin_cannot_touch_other_center_staff(client, center_with_admin, make_user, headers):
    _, admin = center_with_admin
    outsider = make_user("specialist")
    res = client.put(f"/api/admin/specialists/{outsider['_id']}", headers=headers(admin), json={"name": "X"})
    assert res.status_code == 403


def test_admin_without_center_is_refused(client, make_user, headers):
    admin = make_user("admin")
    res = client.get("/api/admin/center", headers=headers(admin))
    assert res.status_code == 403


def test_admin_assigns_child(client, db, center_with_admin, make_user, make_child, headers):
    center, admin = center_with_admin
    specialist = make_user("specialist", center=center["_id"])
    db["center"].update_one({"_id": center["_id"]}, {"$addToSet": {"specialists": specialist["_id"]}})
    parent = make_user("parent")
    child = make_child(parent)

    res = client.post("/api/admin/assign-child", headers=headers(admin),
                      json={"childId": str(child["_id"]), "specialistId": str(specialist["_id"])})
    assert res.status_code == 200
    stored = db["child"].find_one({"_id": child["_id"]})
    assert stored["assignedSpecialist"] == specialist["_id"]
    assert stored["specialistRequestStatus"] == "approved"
    assert db["user"].find_one({"_id": parent["_id"]})["linkedSpecialist"] == specialist["_id"]
    assert db["referral"].find_one({"parent": parent["_id"]})["referralType"] == "admin_assigned"
    assert db["notification"].count_documents({"type": "child_assigned"}) == 2

    res = client.post("/api/admin/assign-child", headers=headers(admin),
                      json={"childId": str(child["_id"]), "specialistId": str(specialist["_id"])})
    assert res.status_code == 400
    assert res.json()["message"] == "This child is already assigned to a specialist"


def test_admin_assign_rejects_foreign_specialist(client, center_with_admin, make_user, make_child, headers):
    _, admin = center_with_admin
    foreign = make_user("specialist")
    child = make_child(make_user("parent"))
    res = client.post("/api/admin/assign-child", headers=headers(admin),
                      json={"childId": str(child["_id"]), "specialistId": str(foreign["_id"])})
    assert res.status_code == 403


def test_move_admin_between_centers(client, db, superadmin, center_with_admin, headers):
    old_center, admin = center_with_admin
    res = client.post("/api/superadmin/centers", headers=headers(superadmin), json={"name": "Second"})
    new_center_id = res.json()["center"]["_id"]

    res = client.put(f"/api/superadmin/admins/{admin['_id']}", headers=headers(superadmin),
                     json={"centerId": new_center_id})
    assert res.status_code == 200
    assert db["center"].find_one({"_id": old_center["_id"]})["admin"] is None
    assert str(db["center"].find_one({"name": "Second"})["admin"]) == str(admin["_id"])
    assert str(db["user"].find_one({"_id": admin["_id"]})["center"]) == new_center_id


def test_delete_center_detaches_staff(client, db, superadmin, center_with_admin, make_user, headers):
    center, admin = center_with_admin
    specialist = make_user("specialist", center=center["_id"])
    db["center"].update_one({"_id": center["_id"]}, {"$addToSet": {"specialists": specialist["_id"]}})

    res = client.delete(f"/api/superadmin/centers/{center['_id']}", headers=headers(superadmin))
    assert res.status_code == 200
    assert db["center"].count_documents({}) == 0
    assert db["user"].find_one({"_id": admin["_id"]})["center"] is None
    assert db["user"].find_one({"_id": specialist["_id"]})["center"] is None


def test_delete_admin_clears_center(client, db, superadmin, center_with_admin, headers):
    center, admin = center_with_admin
    res = client.delete(f"/api/superadmin/admins/{admin['_id']}", headers=headers(superadmin))
    assert res.status_code == 200
    assert db["center"].find_one({"_id": center["_id"]})["admin"] is None
    assert db["user"].find_one({"_id": admin["_id"]}) is None


def test_platform_stats_and_gating(client, superadmin, center_with_admin, make_user, headers):
    make_user("parent")
    stats = client.get("/api/superadmin/stats", headers=headers(superadmin)).json()["stats"]
    assert stats == {"centers": 1, "admins": 1, "specialists": 0, "parents": 1}

    _, admin = center_with_admin
    assert client.get("/api/superadmin/stats", headers=headers(admin)).status_code == 403


def test_admins_listing_hides_secrets(client, superadmin, center_with_admin, headers):
    admins = client.get("/api/superadmin/admins", headers=headers(superadmin)).json()["admins"]
    assert len(admins) == 1
    assert "passwordHash" not in admins[0]
    assert admins[0]["center"]["name"] == "Hope Center"
