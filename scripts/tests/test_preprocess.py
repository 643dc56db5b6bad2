import numpy as np
import pytest

from kintrack.config import Intrinsics
from kintrack.preprocess import FramePreprocessor, Pyramid, compute_normals, create_vmap, pyr_down

from synthetic import wall_depth_mm

ROWS, COLS = 48, 64


def _preprocessor(**kwargs):
    intr = Intrinsics.centered(ROWS, COLS, 50.0, 50.0)
    return FramePreprocessor(intr, **kwargs)


def test_pyramid_shapes():
    pyramid = _preprocessor().process(wall_depth_mm(ROWS, COLS, 1.0))
    assert pyramid.levels == 3
    assert [d.shape for d in pyramid.depths] == [(48, 64), (24, 32), (12, 16)]
    assert [v.shape for v in pyramid.vmaps] == [(48, 64, 3), (24, 32, 3), (12, 16, 3)]


def test_wall_vertices_and_normals():
    pyramid = _preprocessor().process(wall_depth_mm(ROWS, COLS, 1.0))
    for level in range(pyramid.levels):
        vmap = pyramid.vmaps[level]
        assert np.allclose(vmap[..., 2], 1.0, atol=1e-4)

    nmap = pyramid.nmaps[0]
    interior = nmap[5:-5, 5:-5].reshape(-1, 3)
    assert np.all(np.isfinite(interior))
    # normals face the camera
    assert np.allclose(interior, [0.0, 0.0, -1.0], atol=1e-3)


def test_invalid_depth_is_nan():
    depth = wall_depth_mm(ROWS, COLS, 1.0)
    depth[:, :10] = 0
    pyramid = _preprocessor().process(depth)
    assert np.all(np.isnan(pyramid.vmaps[0][:, :10]))
    assert np.all(pyramid.depths[0][:, :10] == 0)


def test_icp_truncation():
    pyramid = _preprocessor(max_icp_distance=0.5).process(wall_depth_mm(ROWS, COLS, 1.0))
    assert not np.any(pyramid.valid_mask(0))


def test_process_fills_preallocated_pyramid():
    pyramid = Pyramid.allocate(ROWS, COLS)
    vmap_buffer = pyramid.vmaps[0]
    result = _preprocessor().process(wall_depth_mm(ROWS, COLS, 1.5), pyramid)
    assert result is pyramid
    assert result.vmaps[0] is vmap_buffer
    assert np.allclose(vmap_buffer[..., 2], 1.5, atol=1e-4)


def test_process_rejects_wrong_shape():
    pyramid = Pyramid.allocate(ROWS, COLS)
    with pytest.raises(ValueError):
        _preprocessor().process(wall_depth_mm(ROWS + 2, COLS), pyramid)


def test_pyr_down_keeps_depth_edges():
    depth = np.full((16, 16), 1.0, dtype=np.float32)
    depth[:, 8:] = 2.0
    half = pyr_down(depth)
    assert half.shape == (8, 8)
    assert np.allclose(half[:, :4], 1.0)
    assert np.allclose(half[:, 4:], 2.0)


def test_normals_of_tilted_plane():
    intr = Intrinsics.centered(32, 32, 30.0, 30.0)
    u, v = np.meshgrid(np.arange(32), np.arange(32))
    # plane z = 1 + 0.5 x, solved per pixel ray
    x_over_z = (u - intr.cx) / intr.fx
    depth = (1.0 / (1.0 - 0.5 * x_over_z)).astype(np.float32)
    nmap = compute_normals(create_vmap(depth, intr))

    expected = np.array([0.5, 0.0, -1.0]) / np.linalg.norm([0.5, 0.0, -1.0])
    centre = nmap[16, 16]
    assert np.allclose(centre, expected, atol=1e-3)
