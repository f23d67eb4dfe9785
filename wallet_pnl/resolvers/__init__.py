from .metadata import MetadataResolver
from .price import PriceResolver

__all__ = ["MetadataResolver", "PriceResolver"]
