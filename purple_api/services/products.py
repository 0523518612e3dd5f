"""
Purple product catalog configuration.

Maps product template names to price and granted time.
"""

from collections.abc import Mapping

from purple_api.exceptions import UnknownProductError
from purple_api.models.domain import SECONDS_PER_DAY, Product

PURPLE_ONE_MONTH = "purple_one_month"
PURPLE_ONE_YEAR = "purple_one_year"

# Product catalog (amounts in millisatoshis)
PURPLE_PRODUCTS: dict[str, Product] = {
    PURPLE_ONE_MONTH: Product(
        name=PURPLE_ONE_MONTH,
        amount_msat=15_000 * 1000,
        description="Purple (1 mo)",
        duration=30 * SECONDS_PER_DAY,
    ),
    PURPLE_ONE_YEAR: Product(
        name=PURPLE_ONE_YEAR,
        amount_msat=150_000 * 1000,
        description="Purple (1 yr)",
        special_label="Save 16%",
        duration=365 * SECONDS_PER_DAY,
    ),
}


def get_product(
    product_template_name: str,
    catalog: Mapping[str, Product] = PURPLE_PRODUCTS,
) -> Product:
    """
    Get product configuration by template name.

    Raises:
        UnknownProductError: If the name is not in the catalog
    """
    product = catalog.get(product_template_name)
    if product is None:
        raise UnknownProductError(product_template_name)
    return product
