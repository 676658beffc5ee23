# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Extraction adapters turning source files into candidate entities and references."""

from .base import DocstringAnnotator, Extractor, PurposeAnnotator
from .python_extractor import PythonExtractor
from .registry import ExtractorRegistry, default_registry

__all__ = [
    "DocstringAnnotator",
    "Extractor",
    "ExtractorRegistry",
    "PurposeAnnotator",
    "PythonExtractor",
    "default_registry",
]
