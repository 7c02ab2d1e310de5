"""
Model Metadata and Execution
============================

Classes
-------
RuntimeModel
    Read-only view of one model folder
ModelConfig, ClassificationConfig, SegmentationConfig, DetectionConfig
    Typed, validated model configuration
AnchorTable
    Detector anchor boxes
Network
    Backend-configurable network

Functions
---------
parse_model_config
    Metadata map -> typed configuration
list_available_models
    Summary of every model folder
"""

from .model_util import (
    AnchorTable,
    ClassificationConfig,
    DetectionConfig,
    ModelConfig,
    ProblemType,
    Resolution,
    RuntimeModel,
    SegmentationConfig,
    list_available_models,
    parse_model_config,
)
from .network import Network, configure_shapes

__all__ = [
    "AnchorTable",
    "ClassificationConfig",
    "DetectionConfig",
    "ModelConfig",
    "ProblemType",
    "Resolution",
    "RuntimeModel",
    "SegmentationConfig",
    "list_available_models",
    "parse_model_config",
    "Network",
    "configure_shapes",
]
