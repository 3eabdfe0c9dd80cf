from islapos.models import Customer

from conftest import add_staff, auth


def create(client, user, **fields):
    body = {"name": "Ana Ruiz", "email": "Ana@Example.com ", "phone": "555-0101", **fields}
    return client.post("/admin/customers", json=body, headers=auth(user))


def test_customer_lifecycle(client, session, owner, restaurant):
    created = create(client, owner, city=" Ponce ", notes="  ")
    assert created.status_code == 200
    customer_id = created.json()["id"]

    customer = session.get(Customer, customer_id)
    assert customer.restaurant_id == restaurant.id
    assert customer.email == "ana@example.com"
    assert customer.city == "Ponce"
    assert customer.notes is None

    listed = client.get("/admin/customers", headers=auth(owner)).json()
    assert listed["restaurantId"] == restaurant.id
    assert [c["id"] for c in listed["customers"]] == [customer_id]

    updated = client.patch(
        "/admin/customers",
        json={"id": customer_id, "phone": "555-0199", "city": None},
        headers=auth(owner),
    )
    assert updated.json() == {"ok": True, "id": customer_id}
    session.refresh(customer)
    assert customer.phone == "555-0199"
    assert customer.city is None
    assert customer.name == "Ana Ruiz"

    deleted = client.request("DELETE", "/admin/customers", json={"id": customer_id}, headers=auth(owner))
    assert deleted.json() == {"ok": True}
    assert client.get("/admin/customers", headers=auth(owner)).json()["customers"] == []


def test_customer_search(client, owner, restaurant):
    create(client, owner)
    create(client, owner, name="Luis Vega", email="luis@example.com", phone="787-0001")

    def names(query):
        response = client.get("/admin/customers", params={"query": query}, headers=auth(owner))
        return [c["name"] for c in response.json()["customers"]]

    assert names("LUIS") == ["Luis Vega"]
    assert names("787") == ["Luis Vega"]
    assert names("example.com") == ["Luis Vega", "Ana Ruiz"]
    assert names("nobody") == []


def test_customer_validation(client, owner, restaurant):
    assert create(client, owner, name=" ").json() == {"error": "Name is required"}
    assert create(client, owner, email="").json() == {"error": "Email is required"}
    assert create(client, owner, phone=None).json() == {"error": "Phone is required"}

    response = client.patch("/admin/customers", json={"phone": "1"}, headers=auth(owner))
    assert response.json() == {"error": "Missing id"}

    customer_id = create(client, owner).json()["id"]
    response = client.patch("/admin/customers", json={"id": customer_id, "name": "  "}, headers=auth(owner))
    assert response.status_code == 400
    assert response.json() == {"error": "Name is required"}

    response = client.request("DELETE", "/admin/customers", json={}, headers=auth(owner))
    assert response.json() == {"error": "Missing id"}


def test_customers_denied_for_cashier(client, cashier):
    response = client.get("/admin/customers", headers=auth(cashier))
    assert response.status_code == 403
    assert response.json() == {"error": "Cashier accounts cannot access customers"}


def test_manager_manages_customers(client, manager, restaurant):
    response = create(client, manager)
    assert response.status_code == 200
    listed = client.get("/admin/customers", headers=auth(manager)).json()
    assert listed["restaurantId"] == restaurant.id
    assert len(listed["customers"]) == 1


def test_customers_of_other_restaurant_are_not_found(client, owner, restaurant, other_owner, other_restaurant):
    foreign_id = create(client, other_owner).json()["id"]

    assert client.get("/admin/customers", headers=auth(owner)).json()["customers"] == []
    response = client.patch("/admin/customers", json={"id": foreign_id, "name": "Mine"}, headers=auth(owner))
    assert response.status_code == 404
    assert response.json() == {"error": "Customer not found"}
    response = client.request("DELETE", "/admin/customers", json={"id": foreign_id}, headers=auth(owner))
    assert response.status_code == 404


def test_pos_captures_customer_by_email(client, session, identity, cashier, restaurant):
    headers = auth(cashier)
    first = client.post(
        "/pos/customers", json={"name": "Ana", "email": "ANA@example.com", "phone": "1"}, headers=headers
    ).json()["customer"]
    second = client.post(
        "/pos/customers", json={"name": "Ana Ruiz", "email": "ana@example.com", "phone": "2"}, headers=headers
    ).json()["customer"]

    assert second == {"id": first["id"], "name": "Ana Ruiz", "email": "ana@example.com", "phone": "2"}
    assert client.get("/pos/customers", params={"query": "ruiz"}, headers=headers).json() == {"customers": [second]}

    response = client.post("/pos/customers", json={"name": "Ana", "phone": "1"}, headers=headers)
    assert response.json() == {"error": "Email is required"}


def test_pos_customers_stay_within_restaurant(client, session, identity, cashier, other_restaurant):
    outsider = add_staff(session, identity, "cashier", other_restaurant.id)
    client.post(
        "/pos/customers", json={"name": "Ana", "email": "ana@example.com", "phone": "1"}, headers=auth(outsider)
    )
    assert client.get("/pos/customers", headers=auth(cashier)).json() == {"customers": []}
