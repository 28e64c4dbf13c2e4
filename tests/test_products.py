import os

import pytest

import main
from schemas import ProductSize
from tests.conftest import API, auth, missing_id

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def product_form(category, /, **overrides):
    data = {
        "name": "Aso Oke",
        "description": "Hand woven",
        "brand": "Iseyin",
        "price": "250.5",
        "colour": "gold",
        "size": "XL",
        "category": str(category["_id"]),
        "countInStock": "12",
    }
    data.update(overrides)
    return data


def test_create_product_with_upload(client, make_user, category):
    seller = make_user(role="seller")
    res = client.post(
        f"{API}/products", headers=auth(seller), data=product_form(category),
        files=[("image", ("aso oke.png", PNG, "image/png")), ("images", ("side.jpg", b"jpg", "image/jpeg"))],
    )
    assert res.status_code == 201
    product = res.json()["product"]
    assert product["image"].startswith("http://testserver/public/uploads/aso-oke-")
    assert product["image"].endswith(".png")
    assert len(product["images"]) == 1
    assert product["size"] == {"kind": "text", "value": "XL"}
    assert product["category"]["name"] == "Fashion"
    assert product["rating"] == 0

    stored = os.listdir(main.UPLOAD_DIR)
    assert product["image"].rsplit("/", 1)[1] in stored


def test_create_product_rejections(client, make_user, category):
    seller = make_user(role="seller")
    image = [("image", ("a.png", PNG, "image/png"))]

    res = client.post(f"{API}/products", headers=auth(seller), data=product_form(category, category=missing_id()),
                      files=image)
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid category"

    res = client.post(f"{API}/products", headers=auth(seller), data=product_form(category))
    assert res.status_code == 400
    assert res.json()["message"] == "No image provided"

    res = client.post(f"{API}/products", headers=auth(seller), data=product_form(category),
                      files=[("image", ("a.gif", b"GIF89a", "image/gif"))])
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid image type"

    res = client.post(f"{API}/products", headers=auth(seller), data=product_form(category, countInStock="5000"),
                      files=image)
    assert res.status_code == 400

    res = client.post(f"{API}/products", headers=auth(seller), data=product_form(category, price="-1"),
                      files=image)
    assert res.status_code == 400


def test_plain_users_cannot_write_products(client, make_user, category):
    user = make_user()
    res = client.post(f"{API}/products", headers=auth(user), data=product_form(category),
                      files=[("image", ("a.png", PNG, "image/png"))])
    assert res.status_code == 403


def test_list_products_filters_sort_and_pages(client, make_product):
    make_product(name="A", price=10.0, colour="red", size={"kind": "numeric", "value": 42.0})
    make_product(name="B", price=20.0, colour="blue", size={"kind": "text", "value": "L"})
    make_product(name="C", price=30.0, colour="red", brand="Other")

    res = client.get(f"{API}/products", params={"sort": "price:desc"})
    body = res.json()
    assert [p["name"] for p in body["products"]] == ["C", "B", "A"]
    assert body["totalProducts"] == 3
    assert body["products"][0]["category"]["name"] == "Fashion"

    res = client.get(f"{API}/products", params={"colour": "red", "minPrice": 15})
    assert [p["name"] for p in res.json()["products"]] == ["C"]

    res = client.get(f"{API}/products", params={"size": "42"})
    assert [p["name"] for p in res.json()["products"]] == ["A"]

    res = client.get(f"{API}/products", params={"sort": "price:asc", "limit": 2, "page": 2})
    body = res.json()
    assert [p["name"] for p in body["products"]] == ["C"]
    assert body["totalPages"] == 2
    assert body["currentPage"] == 2

    assert client.get(f"{API}/products", params={"brand": "Other"}).json()["totalProducts"] == 1
    assert client.get(f"{API}/products", params={"sort": "secret:asc"}).status_code == 400


def test_filter_by_categories(client, mongo, make_product, category):
    other_id = mongo["category"].insert_one({"name": "Food"}).inserted_id
    make_product(name="Shirt")
    make_product(name="Garri", category=other_id)

    res = client.get(f"{API}/products", params={"categories": f"{other_id}"})
    assert [p["name"] for p in res.json()["products"]] == ["Garri"]
    res = client.get(f"{API}/products", params={"categories": f"{other_id},{category['_id']}"})
    assert res.json()["totalProducts"] == 2

    res = client.get(f"{API}/products/category/{other_id}")
    assert [p["name"] for p in res.json()["products"]] == ["Garri"]


def test_get_count_update_and_delete_product(client, make_user, make_product, category):
    seller = make_user(role="seller")
    product = make_product()
    url = f"{API}/products/{product['_id']}"

    assert client.get(url).json()["product"]["name"] == "Ankara Shirt"
    assert client.get(f"{API}/products/{missing_id()}").status_code == 404
    assert client.get(f"{API}/products/get/count").json()["productCount"] == 1

    res = client.put(url, headers=auth(seller), data={"price": "75", "size": "40"})
    assert res.status_code == 200
    updated = res.json()["product"]
    assert updated["price"] == 75.0
    assert updated["size"] == {"kind": "numeric", "value": 40.0}
    assert updated["name"] == "Ankara Shirt"

    assert client.put(url, headers=auth(seller), data={"countInStock": "1001"}).status_code == 400
    assert client.put(url, headers=auth(seller), data={"category": missing_id()}).status_code == 400

    res = client.put(f"{API}/products/gallery-images/{product['_id']}", headers=auth(seller),
                     files=[("images", ("one.png", PNG, "image/png")), ("images", ("two.png", PNG, "image/png"))])
    assert res.status_code == 200
    assert len(res.json()["product"]["images"]) == 2

    assert client.delete(url, headers=auth(seller)).status_code == 200
    assert client.delete(url, headers=auth(seller)).status_code == 404


def test_same_named_uploads_get_distinct_files(client, make_user, make_product):
    seller = make_user(role="seller")
    product = make_product()
    res = client.put(f"{API}/products/gallery-images/{product['_id']}", headers=auth(seller),
                     files=[("images", ("photo.png", PNG, "image/png")),
                            ("images", ("photo.png", b"\x89PNG\r\n\x1a\nsecond", "image/png"))])
    assert res.status_code == 200
    urls = res.json()["product"]["images"]
    assert len(set(urls)) == 2

    names = [url.rsplit("/", 1)[-1] for url in urls]
    for name in names:
        assert name.startswith("photo-") and name.endswith(".png")
        assert os.path.isfile(os.path.join(main.UPLOAD_DIR, name))
    with open(os.path.join(main.UPLOAD_DIR, names[1]), "rb") as f:
        assert f.read().endswith(b"second")


@pytest.mark.parametrize("raw, kind, value", [
    ("42", "numeric", 42.0),
    (38, "numeric", 38.0),
    ("XL", "text", "XL"),
    (" 9.5 ", "numeric", 9.5),
])
def test_product_size_parse(raw, kind, value):
    size = ProductSize.parse(raw)
    assert size.kind == kind
    assert size.value == value
