"""Data models for calculator object files."""

from .hp_object import ObjectInfo, decode_object_size, load_object, read_object
