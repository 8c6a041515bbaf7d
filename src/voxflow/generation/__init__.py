"""Stochastic and numerical kernels: top-k sampling, Euler integration."""
from voxflow.generation.euler import EulerIntegrator
from voxflow.generation.sampler import log_softmax, top_k_indices, top_k_sample

__all__ = ["EulerIntegrator", "log_softmax", "top_k_indices", "top_k_sample"]
