"""Declarative resource descriptors and their dependency graph."""

from .models import ResourceDescriptor, ref
from .graph import DescriptorGraph
from .catalog import build_descriptors, load_descriptors, save_descriptors

__all__ = [
    'ResourceDescriptor',
    'ref',
    'DescriptorGraph',
    'build_descriptors',
    'load_descriptors',
    'save_descriptors',
]
