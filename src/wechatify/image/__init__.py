"""Image pipeline stages: acquire, validate, compress, and Markdown helpers.

Exports
-------
Acquirer
    Resolve local, remote, and generated sources into local files.
validate_asset / detect_format
    Content-sniff files against the format allow-list.
Compressor / probe
    Fit images to a :class:`~wechatify.models.CompressionPolicy`.
parse_image_source
    Classify a Markdown image target.
extract_images / replace_image_urls
    Find and rewrite image references in Markdown.
PipelineStateMachine
    Track one run's lifecycle and enforce valid transitions.
"""

from .acquire import Acquirer
from .compress import Compressor, probe, quality_schedule
from .detect import parse_image_source
from .extract import extract_images, replace_image_urls
from .state import PipelineStateMachine
from .validate import detect_format, is_supported_format, validate_asset

__all__ = [
    "Acquirer",
    "Compressor",
    "PipelineStateMachine",
    "detect_format",
    "extract_images",
    "is_supported_format",
    "parse_image_source",
    "probe",
    "quality_schedule",
    "replace_image_urls",
    "validate_asset",
]
