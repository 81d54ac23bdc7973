from typing import Optional
from pydantic import BaseModel


class ProductImage(BaseModel):
    url: str
    public_id: Optional[str] = None
    alt: str = ""
    is_primary: bool = False


def primary_image(product: dict) -> Optional[str]:
    """Pick the display image for a catalog product document."""
    images = product.get("images") or []
    for image in images:
        if isinstance(image, dict) and image.get("is_primary"):
            return image.get("url")
    if product.get("image_url"):
        return product["image_url"]
    if images:
        first = images[0]
        return first.get("url") if isinstance(first, dict) else first
    return None
