import pytest

import reviews
from errors import ForbiddenError, NotFoundError, ProductNotFoundError, ValidationError


@pytest.fixture
def product_id(make_product):
    return make_product(name="Apples")


def ratings(catalog, product_id):
    return catalog.find_product(product_id)["ratings"]


def test_ratings_follow_reviews(review_store, catalog, make_user, product_id):
    first, second = make_user(), make_user()

    review = reviews.create_review(review_store, catalog, first["id"], product_id, 4, "Crisp")
    reviews.create_review(review_store, catalog, second["id"], product_id, 5, "Sweet")
    assert ratings(catalog, product_id) == {"average": 4.5, "count": 2}

    reviews.update_review(review_store, catalog, str(review["_id"]), first["id"], rating=1)
    assert ratings(catalog, product_id) == {"average": 3.0, "count": 2}

    reviews.delete_review(review_store, catalog, str(review["_id"]), first["id"])
    assert ratings(catalog, product_id) == {"average": 5.0, "count": 1}


def test_average_rounds_to_one_decimal(review_store, catalog, make_user, product_id):
    for rating in (5, 4, 4):
        reviews.create_review(review_store, catalog, make_user()["id"], product_id, rating, "ok")

    assert ratings(catalog, product_id) == {"average": 4.3, "count": 3}


def test_last_review_removed_resets_ratings(review_store, catalog, customer, product_id):
    review = reviews.create_review(review_store, catalog, customer["id"], product_id, 3, "Fine")

    reviews.delete_review(review_store, catalog, str(review["_id"]), customer["id"])

    assert ratings(catalog, product_id) == {"average": 0, "count": 0}


def test_one_review_per_user_and_product(review_store, catalog, customer, product_id):
    reviews.create_review(review_store, catalog, customer["id"], product_id, 3, "Fine")

    with pytest.raises(ValidationError):
        reviews.create_review(review_store, catalog, customer["id"], product_id, 5, "Changed my mind")


@pytest.mark.parametrize("missing", ["not-an-id", "64b7f0c2a1b2c3d4e5f60718"])
def test_review_needs_existing_product(review_store, catalog, customer, missing):
    with pytest.raises(ProductNotFoundError):
        reviews.create_review(review_store, catalog, customer["id"], missing, 3, "Where?")


def test_only_author_may_edit_or_delete(review_store, catalog, customer, make_user, product_id):
    review = reviews.create_review(review_store, catalog, customer["id"], product_id, 3, "Fine")
    intruder = make_user()

    with pytest.raises(ForbiddenError):
        reviews.update_review(review_store, catalog, str(review["_id"]), intruder["id"], rating=1)
    with pytest.raises(ForbiddenError):
        reviews.delete_review(review_store, catalog, str(review["_id"]), intruder["id"])

    assert ratings(catalog, product_id) == {"average": 3.0, "count": 1}


def test_unknown_review_is_not_found(review_store, catalog, customer):
    with pytest.raises(NotFoundError):
        reviews.delete_review(review_store, catalog, "64b7f0c2a1b2c3d4e5f60718", customer["id"])


def test_duplicate_review_race_hits_unique_index(review_store, catalog, customer, product_id, monkeypatch):
    review_store.ensure_indexes()
    reviews.create_review(review_store, catalog, customer["id"], product_id, 3, "Fine")
    monkeypatch.setattr(review_store, "find_by_user", lambda product_id, user_id: None)

    with pytest.raises(ValidationError):
        reviews.create_review(review_store, catalog, customer["id"], product_id, 5, "Again")

    assert ratings(catalog, product_id) == {"average": 3.0, "count": 1}
