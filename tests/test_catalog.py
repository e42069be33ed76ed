from bson.objectid import ObjectId


def create_category(client, admin, name="Sky Shots", **extra):
    res = client.post("/api/categories", headers=admin["headers"], json={"name": name, **extra})
    assert res.status_code == 201
    return res.json()["category"]


def test_category_slug_and_sub_categories(client, admin):
    category = create_category(client, admin, name="Ground Chakkars & Spinners",
                               sub_categories=[{"name": "Big Wheels"}])
    assert category["slug"] == "ground-chakkars-spinners"
    assert category["sub_categories"][0]["slug"] == "big-wheels"

    res = client.put(f"/api/categories/{category['id']}", headers=admin["headers"], json={"name": "Spinners"})
    assert res.json()["category"]["slug"] == "spinners"


def test_sub_category_ids_survive_updates(client, admin):
    category = create_category(client, admin, sub_categories=[{"name": "Big Wheels"}])
    wheel_id = category["sub_categories"][0]["id"]
    res = client.put(f"/api/categories/{category['id']}", headers=admin["headers"],
                     json={"sub_categories": [{"name": "Big Wheels", "description": "Large"}, {"name": "Twisters"}]})
    subs = {s["slug"]: s["id"] for s in res.json()["category"]["sub_categories"]}
    assert subs["big-wheels"] == wheel_id
    assert subs["twisters"] != wheel_id


def test_duplicate_category_name_rejected(client, admin):
    create_category(client, admin)
    res = client.post("/api/categories", headers=admin["headers"], json={"name": "Sky Shots"})
    assert res.status_code == 400


def test_category_list_counts_active_products(client, admin, make_product):
    category = create_category(client, admin)
    make_product(category_id=category["id"])
    make_product(name="Retired Rocket", category_id=category["id"], is_active=False)
    categories = client.get("/api/categories").json()["categories"]
    assert categories[0]["product_count"] == 1


def test_deleting_category_unsets_products(client, db, admin, make_product):
    category = create_category(client, admin)
    product_id = make_product(category_id=category["id"])
    res = client.delete(f"/api/categories/{category['id']}", headers=admin["headers"])
    assert res.status_code == 200
    product = db["product"].find_one({"_id": ObjectId(product_id)})
    assert product is not None
    assert "category_id" not in product


def test_product_list_filters(client, make_product):
    make_product(name="Atom Bomb", price=80, stock=0)
    make_product(name="Flower Pots", price=300, stock=5)
    make_product(name="Sparklers 30cm", price=120, stock=100, is_featured=True)
    make_product(name="Hidden Item", price=50, stock=100, is_active=False)

    res = client.get("/api/products").json()
    assert res["total"] == 3
    assert res["current_page"] == 1

    names = [p["name"] for p in client.get("/api/products", params={"min_price": 100, "max_price": 200}).json()["products"]]
    assert names == ["Sparklers 30cm"]
    low = client.get("/api/products", params={"stock_status": "low-stock"}).json()["products"]
    assert [p["name"] for p in low] == ["Flower Pots"]
    out = client.get("/api/products", params={"stock_status": "out-of-stock"}).json()["products"]
    assert [p["name"] for p in out] == ["Atom Bomb"]
    by_price = client.get("/api/products", params={"sort_by": "price", "sort_order": "asc"}).json()["products"]
    assert [p["price"] for p in by_price] == [80, 120, 300]
    featured = client.get("/api/products/featured").json()["products"]
    assert [p["name"] for p in featured] == ["Sparklers 30cm"]


def test_search_requires_query(client, make_product):
    make_product(name="Twinkling Star")
    assert client.get("/api/products/search").status_code == 400
    res = client.get("/api/products/search", params={"q": "twinkling"}).json()
    assert res["count"] == 1


def test_product_detail_includes_category(client, admin, make_product):
    category = create_category(client, admin)
    product_id = make_product(category_id=category["id"])
    product = client.get(f"/api/products/{product_id}").json()["product"]
    assert product["category"]["name"] == "Sky Shots"
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404
    assert client.get("/api/products/not-an-id").status_code == 400


def test_admin_product_crud(client, admin):
    res = client.post("/api/products", headers=admin["headers"], json={
        "name": "7 Shot Multi Colour",
        "description": "Seven bursts of colour",
        "price": 450,
        "stock": 30,
        "weight": 500,
        "unit": "box",
    })
    assert res.status_code == 201
    product_id = res.json()["product"]["id"]

    res = client.put(f"/api/products/{product_id}", headers=admin["headers"], json={"price": 399, "is_featured": True})
    assert res.json()["product"]["price"] == 399

    res = client.put(f"/api/products/{product_id}", headers=admin["headers"], json={"category_id": str(ObjectId())})
    assert res.status_code == 400

    assert client.delete(f"/api/products/{product_id}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_product_image_upload(client, admin, make_product):
    product_id = make_product()
    png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
    res = client.post(f"/api/products/{product_id}/images", headers=admin["headers"],
                      files=[("images", ("a.png", png, "image/png")), ("images", ("b.png", png, "image/png"))])
    assert res.status_code == 200
    images = res.json()["images"]
    assert len(images) == 2

    res = client.delete(f"/api/products/{product_id}/images/{images[0]['id']}", headers=admin["headers"])
    assert len(res.json()["images"]) == 1


def test_moderator_cannot_manage_products(client, make_admin):
    moderator = make_admin(role="moderator")
    res = client.post("/api/products", headers=moderator["headers"], json={
        "name": "X", "description": "Y", "price": 1, "weight": 1, "unit": "piece",
    })
    assert res.status_code == 403
    assert res.json()["detail"] == "Access denied. Required permission: manage_products"


def test_reviews(client, db, make_user, make_product):
    product_id = make_product()
    first = make_user()
    second = make_user(email="ravi@gmail.com", name="Ravi")
    url = f"/api/products/{product_id}/reviews"

    assert client.post(url, headers=first["headers"], json={"rating": 5, "comment": "short"}).status_code == 400
    assert client.post(url, headers=first["headers"], json={"rating": 6, "comment": "Lovely colours!!"}).status_code == 400

    assert client.post(url, headers=first["headers"], json={"rating": 5, "comment": "Lovely colours, safe too"}).status_code == 201
    res = client.post(url, headers=second["headers"], json={"rating": 4, "comment": "Good value for money"})
    assert res.json()["ratings"] == {"average": 4.5, "count": 2}
    assert client.post(url, headers=first["headers"], json={"rating": 3, "comment": "Changed my mind here"}).status_code == 400

    assert len(client.get(url).json()["reviews"]) == 2
    recent = client.get("/api/products/reviews/recent").json()["reviews"]
    assert {r["user_name"] for r in recent} == {"Priya", "Ravi"}


def test_bundles_and_gift_boxes(client, admin, make_bundle):
    make_bundle(name="Retired Pack", is_active=False)
    res = client.post("/api/bundles", headers=admin["headers"], json={
        "name": "Kids Special", "price": 799, "description": "Safe crackers for kids",
        "crackers": [{"name": "Pencils", "quantity": 10}],
    })
    assert res.status_code == 201
    bundle_id = res.json()["bundle"]["id"]

    assert [b["name"] for b in client.get("/api/bundles").json()["bundles"]] == ["Kids Special"]
    assert len(client.get("/api/admin/bundles", headers=admin["headers"]).json()["bundles"]) == 2

    res = client.put(f"/api/bundles/{bundle_id}", headers=admin["headers"], json={"price": 699})
    assert res.json()["bundle"]["price"] == 699
    assert client.delete(f"/api/bundles/{bundle_id}", headers=admin["headers"]).status_code == 200

    res = client.post("/api/giftboxes", headers=admin["headers"], json={
        "name": "Premium Gift Box", "price": 2499, "description": "Assorted premium crackers",
    })
    gift_box_id = res.json()["gift_box"]["id"]
    assert client.get(f"/api/giftboxes/{gift_box_id}").json()["gift_box"]["price"] == 2499
