"""Anchor lattice and non-maximum suppression for BlazePose-style detectors."""
