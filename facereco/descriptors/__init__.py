"""Texture descriptors for aligned face patches."""

from facereco.descriptors.lbp import compute_lbp_image, distance, encode, preprocess_face

__all__ = ["compute_lbp_image", "distance", "encode", "preprocess_face"]
