"""
Errors visible to callers of the similar products service.
"""


class SimilarProductsRetrievalError(Exception):
    """The list of similar ids for a product could not be obtained."""

    def __init__(self, product_id: str, cause: BaseException | None = None):
        self.product_id = product_id
        self.cause = cause
        super().__init__(f"Failed to retrieve similar products for: {product_id}")
