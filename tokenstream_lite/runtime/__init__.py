"""
Model runtime boundary.

Provides:
- ModelRuntime / RuntimeModel / RuntimeContext: Abstract runtime interfaces
- ContextParams: Context construction parameters
- TransformersRuntime: CPU runtime backed by HuggingFace transformers
"""

from tokenstream_lite.runtime.base import ContextParams, ModelRuntime, RuntimeContext, RuntimeModel
from tokenstream_lite.runtime.transformers_runtime import TransformersRuntime

__all__ = ["ContextParams", "ModelRuntime", "RuntimeContext", "RuntimeModel", "TransformersRuntime"]
