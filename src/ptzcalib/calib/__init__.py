"""
Camera estimation from planar model correspondences.

A closed-form initialization (homography, focal length, decomposition) feeds a
Levenberg-Marquardt refinement over point, line and conic residuals.
"""
