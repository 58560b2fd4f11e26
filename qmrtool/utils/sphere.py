"""
Gradient directions: conversion between unit vectors and spherical angles, and direction sets on the half sphere.
"""
import numpy as np


def normalize(vecs: np.ndarray) -> np.ndarray:
    """
    :param vecs: array of shape (n, 3)
    :return: the vectors scaled to unit length
    """
    return vecs / np.linalg.norm(vecs, axis=1, keepdims=True)


def unitvector_to_angles(vector: np.ndarray) -> np.ndarray:
    """
    Polar angle θ in [0, π] and azimuth φ in [-π, π] of unit vectors.

    :param vector: array of shape (n, 3)
    :return: array of shape (n, 2) with columns θ, φ
    :raise ValueError: Wrong shape or vectors that are not of unit length.
    """
    if vector.ndim != 2 or vector.shape[1] != 3:
        raise ValueError(f"Expected unit vectors of shape (n, 3), got {vector.shape}.")
    if not np.allclose(np.linalg.norm(vector, axis=1), 1.):
        raise ValueError("Not every vector has unit length.")

    theta = np.arccos(np.clip(vector[:, 2], -1.0, 1.0))
    phi = np.arctan2(vector[:, 1], vector[:, 0])
    return np.column_stack([theta, phi])


def angles_to_unitvectors(angles: np.ndarray) -> np.ndarray:
    """
    Inverse of unitvector_to_angles.

    :param angles: array of shape (n, 2) with columns θ, φ
    :return: array of shape (n, 3)
    """
    if angles.ndim != 2 or angles.shape[1] != 2:
        raise ValueError(f"Expected angles of shape (n, 2), got {angles.shape}.")

    theta, phi = angles[:, 0], angles[:, 1]
    sin_theta = np.sin(theta)
    return np.column_stack([sin_theta * np.cos(phi), sin_theta * np.sin(phi), np.cos(theta)])


def sample_half_sphere_fibonacci(n: int) -> np.ndarray:
    """
    Near uniform directions with z > 0 from a spherical Fibonacci lattice. The result is deterministic.

    :param n: number of directions
    :return: unit vectors of shape (n, 3)
    """
    if n <= 0:
        raise ValueError(f"Can not sample {n} directions.")

    k = np.arange(n) + 0.5
    theta = np.arccos(1 - k / n)
    phi = np.pi * (np.sqrt(5) - 1) * k
    return angles_to_unitvectors(np.column_stack([theta, phi]))
