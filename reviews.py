import logging

from pymongo.errors import DuplicateKeyError

from errors import ForbiddenError, NotFoundError, ProductNotFoundError, ValidationError
from schemas import Review
from stores import CatalogStore, ReviewStore

LOG = logging.getLogger("reviews")


def refresh_product_ratings(reviews: ReviewStore, catalog: CatalogStore, product_id: str) -> None:
    ratings = [r["rating"] for r in reviews.reviews_for_product(product_id)]
    if ratings:
        average, count = round(sum(ratings) / len(ratings), 1), len(ratings)
    else:
        average, count = 0, 0
    catalog.set_ratings(product_id, average, count)


def create_review(reviews: ReviewStore, catalog: CatalogStore, user_id: str, product_id: str,
                  rating: int, comment: str) -> dict:
    try:
        product = catalog.find_product(product_id)
    except NotFoundError:
        product = None
    if product is None:
        raise ProductNotFoundError()
    if reviews.find_by_user(product_id, user_id):
        raise ValidationError("You have already reviewed this product")
    try:
        review = reviews.create_review(Review(product_id=product_id, user_id=user_id, rating=rating, comment=comment))
    except DuplicateKeyError:
        raise ValidationError("You have already reviewed this product")
    refresh_product_ratings(reviews, catalog, product_id)
    return review


def _owned_review(reviews: ReviewStore, review_id: str, user_id: str, action: str) -> dict:
    review = reviews.find_review(review_id)
    if review is None:
        raise NotFoundError("Review not found")
    if review["user_id"] != user_id:
        raise ForbiddenError(f"Not authorized to {action} this review")
    return review


def update_review(reviews: ReviewStore, catalog: CatalogStore, review_id: str, user_id: str,
                  rating=None, comment=None) -> dict:
    review = _owned_review(reviews, review_id, user_id, "update")
    changes = {k: v for k, v in (("rating", rating), ("comment", comment)) if v is not None}
    if changes:
        review = reviews.update_review(review_id, changes)
        refresh_product_ratings(reviews, catalog, review["product_id"])
    return review


def delete_review(reviews: ReviewStore, catalog: CatalogStore, review_id: str, user_id: str) -> None:
    review = _owned_review(reviews, review_id, user_id, "delete")
    reviews.delete_review(review_id)
    refresh_product_ratings(reviews, catalog, review["product_id"])
    LOG.info("Review %s removed by %s", review_id, user_id)
