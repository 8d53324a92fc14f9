import logging

from pymongo.database import Database

from database import COL_ORDER, COL_PRODUCT, id_filter, utcnow
from errors import DownloadNotAvailable

logger = logging.getLogger(__name__)


def redeem(db: Database, user_id: str, download_id: str) -> dict:
    """Authorize a download and return what the file server needs to stream it.

    Every failure raises the same DownloadNotAvailable. Redemption does not
    consume the entitlement.
    """
    order = db[COL_ORDER].find_one({"downloads.download_id": download_id, "user_id": user_id})
    if order is None or order.get("status") != "COMPLETED":
        raise DownloadNotAvailable()

    entitlement = next(
        (d for d in order.get("downloads", []) if d.get("download_id") == download_id),
        None,
    )
    if entitlement is None or entitlement.get("user_id") != user_id:
        raise DownloadNotAvailable()
    if entitlement.get("status") != "ACTIVE":
        raise DownloadNotAvailable()
    if entitlement.get("expires_at") is None or entitlement["expires_at"] <= utcnow():
        raise DownloadNotAvailable()

    product = db[COL_PRODUCT].find_one(id_filter(entitlement["product_id"])) or {}
    item = next((i for i in order.get("items", []) if i.get("product_id") == entitlement["product_id"]), {})

    logger.info("Download requested: %s for user %s", download_id, user_id)
    return {
        "download_id": download_id,
        "order_number": order.get("order_number"),
        "product_id": entitlement["product_id"],
        "product_title": item.get("title") or product.get("title") or "Unknown Product",
        "file_url": product.get("file_url"),
    }
