from .subspace_alignment import (
    principal_angles,
    subspace_distance,
    component_correlation,
    sign_aligned_error,
    angle_to_degrees,
)
from .variance import explained_variance_error, cumulative_explained_variance, compare_explained_variance

__all__ = [
    'principal_angles',
    'subspace_distance',
    'component_correlation',
    'sign_aligned_error',
    'angle_to_degrees',
    'explained_variance_error',
    'cumulative_explained_variance',
    'compare_explained_variance',
]
