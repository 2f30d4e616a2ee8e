from .bson_convert import bson_safe

__all__ = ["bson_safe"]
