import numpy as np
import pytest
from plyfile import PlyData

from kintrack.config import Intrinsics
from kintrack.geometry import make_pose
from kintrack.volume import (
    MAX_WEIGHT,
    ColorVolume,
    CyclicalBuffer,
    TsdfVolume,
    WorldModel,
    raycast,
    render_shaded,
    resize_nmap,
    resize_vmap,
)

WALL = 1.2


def _wall_volume(iterations=1):
    """2 m cube, camera on the z = 0 face looking at a wall 1.2 m away."""
    volume = TsdfVolume(resolution=64, size=2.0, trunc_dist=0.15)
    intr = Intrinsics.centered(32, 32, 32.0, 32.0)
    depth = np.full((32, 32), WALL, dtype=np.float32)
    t_local = np.array([1.0, 1.0, 0.0])
    for _ in range(iterations):
        volume.integrate(depth, intr, np.eye(3), t_local)
    return volume, intr, t_local


def _surface_buffer():
    volume = TsdfVolume(resolution=32, size=3.0, trunc_dist=0.3)
    volume.tsdf[:, :, 10] = 0.0
    volume.weight[:, :, 10] = 1.0
    buffer = CyclicalBuffer(distance_threshold=1.5, volume_size=3.0, resolution=32)
    buffer.init_buffer(volume)
    # init_buffer resets the volume
    volume.tsdf[:, :, 10] = 0.0
    volume.weight[:, :, 10] = 1.0
    return volume, buffer


def test_truncation_is_clamped():
    volume = TsdfVolume(resolution=16, size=3.0, trunc_dist=0.03)
    assert volume.trunc_dist == pytest.approx(2.1 * 3.0 / 16)
    volume.set_tsdf_trunc_dist(1.0)
    assert volume.trunc_dist == pytest.approx(1.0)


def test_new_volume_is_empty():
    volume = TsdfVolume(resolution=8, size=1.0)
    assert volume.is_empty()
    assert np.all(volume.tsdf == 1.0)
    assert volume.voxel_centers().shape == (512, 3)
    assert np.allclose(volume.voxel_centers()[0], [0.0625] * 3)


def test_integrate_signs_along_optical_axis():
    volume, _, _ = _wall_volume()
    assert not volume.is_empty()
    column = volume.tsdf[32, 32]
    weights = volume.weight[32, 32]
    z_centres = (np.arange(64) + 0.5) * 2.0 / 64

    front = (z_centres < WALL - 0.2) & (z_centres > 0.3)
    assert np.all(column[front] == 1.0)
    near_front = np.abs(z_centres - (WALL - 0.05)) < 0.016
    assert np.all((column[near_front] > 0) & (column[near_front] < 1))
    near_back = np.abs(z_centres - (WALL + 0.05)) < 0.016
    assert np.all(column[near_back] < 0)
    # behind the truncation band nothing is written
    assert np.all(weights[z_centres > WALL + 0.2] == 0)


def test_weight_is_capped():
    volume = TsdfVolume(resolution=8, size=1.0, trunc_dist=0.3)
    intr = Intrinsics.centered(16, 16, 16.0, 16.0)
    depth = np.full((16, 16), 0.6, dtype=np.float32)
    for _ in range(MAX_WEIGHT + 5):
        volume.integrate(depth, intr, np.eye(3), np.array([0.5, 0.5, 0.0]))
    assert volume.weight.max() == MAX_WEIGHT


def test_interpolate_outside_is_nan():
    volume, _, _ = _wall_volume()
    values = volume.interpolate(np.array([[-1.0, 0.0, 0.0], [1.0, 1.0, 0.8], [np.nan, 1.0, 1.0]]))
    assert np.isnan(values[0])
    assert values[1] == pytest.approx(1.0)
    assert np.isnan(values[2])


def test_shift_rolls_and_clears():
    volume = TsdfVolume(resolution=8, size=1.0, trunc_dist=0.3)
    volume.tsdf[:] = np.arange(8, dtype=np.float32)[:, None, None] / 10.0
    volume.weight[:] = 1.0
    volume.shift([2, 0, 0])
    assert volume.tsdf[0, 0, 0] == pytest.approx(0.2)
    assert np.all(volume.tsdf[6:] == 1.0)
    assert np.all(volume.weight[6:] == 0.0)

    volume.shift([0, 0, -3])
    assert np.all(volume.weight[:, :, :3] == 0.0)


def test_raycast_wall():
    volume, intr, t_local = _wall_volume()
    vmap, nmap = raycast(volume, intr, np.eye(3), t_local, 32, 32)
    assert vmap.shape == (32, 32, 3)

    hits = np.isfinite(vmap[..., 2])
    assert hits.mean() > 0.5
    assert np.median(vmap[hits][:, 2]) == pytest.approx(WALL, abs=0.02)
    normal_z = nmap[hits][:, 2]
    assert np.median(normal_z) < -0.9
    assert np.all(normal_z < -0.7)


def test_resize_maps():
    vmap = np.ones((4, 4, 3), dtype=np.float32)
    vmap[0, 0] = np.nan
    half = resize_vmap(vmap)
    assert half.shape == (2, 2, 3)
    assert np.all(np.isnan(half[0, 0]))
    assert np.allclose(half[1, 1], 1.0)

    nmap = np.zeros((4, 4, 3), dtype=np.float32)
    nmap[..., 2] = -1.0
    assert np.allclose(resize_nmap(nmap)[..., 2], -1.0)


def test_render_shaded():
    volume, intr, t_local = _wall_volume()
    vmap, nmap = raycast(volume, intr, np.eye(3), t_local, 32, 32)
    image = render_shaded(vmap, nmap, t_local)
    assert image.shape == (32, 32, 3)
    assert image.dtype == np.uint8
    hits = np.isfinite(vmap[..., 2]) & np.isfinite(nmap[..., 2])
    assert np.all(image[~hits] == 0)
    assert image[hits].min() > 150


def test_no_shift_near_centre():
    volume, buffer = _surface_buffer()
    pose = make_pose(np.eye(3), [1.5, 1.5, 1.5])
    assert not buffer.check_for_shift(volume, pose, 0.0)
    assert np.allclose(buffer.origin_metric, 0.0)


def test_shift_moves_origin_and_extracts():
    volume, buffer = _surface_buffer()
    pose = make_pose(np.eye(3), [3.5, 1.5, 1.5])
    assert buffer.check_for_shift(volume, pose, 0.0)

    assert np.allclose(buffer.origin_metric, [1.96875, 0.0, 0.0])
    assert buffer.origin_grid.tolist() == [21, 0, 0]
    assert buffer.last_offset.tolist() == [21, 0, 0]
    assert buffer.world_model.size == 21 * 32
    world = buffer.world_model.world
    assert np.allclose(world[:, 2], (10 + 0.5) * 3.0 / 32)
    assert world[:, 0].max() < 21 * 3.0 / 32
    # the kept slab moved to the front of the grid
    assert np.all(volume.weight[:11, :, 10] == 1.0)
    assert np.all(volume.weight[11:] == 0.0)


def test_last_shift_extracts_whole_cube():
    volume, buffer = _surface_buffer()
    pose = make_pose(np.eye(3), [1.5, 1.5, 1.5])
    assert buffer.check_for_shift(volume, pose, 0.0, last_shift=True, force_shift=True)
    assert buffer.world_model.size == 32 * 32


def test_shift_can_be_only_reported():
    volume, buffer = _surface_buffer()
    pose = make_pose(np.eye(3), [3.5, 1.5, 1.5])
    assert buffer.check_for_shift(volume, pose, 0.0, perform_shift=False)
    assert np.allclose(buffer.origin_metric, 0.0)
    assert buffer.world_model.is_empty()


def test_target_point_follows_optical_axis():
    buffer = CyclicalBuffer()
    R = np.array([[0.0, 0.0, 1.0], [0.0, 1.0, 0.0], [-1.0, 0.0, 0.0]])
    target = buffer.compute_target_point(make_pose(R, [1.0, 2.0, 3.0]), 2.0)
    assert np.allclose(target, [3.0, 2.0, 3.0])


def test_reset_keeps_world_model():
    volume, buffer = _surface_buffer()
    buffer.check_for_shift(volume, make_pose(np.eye(3), [3.5, 1.5, 1.5]), 0.0)
    buffer.reset_buffer(volume)
    assert np.allclose(buffer.origin_metric, 0.0)
    assert volume.is_empty()
    assert buffer.world_model.size == 21 * 32


def test_world_model_export(tmp_path):
    model = WorldModel()
    assert model.export(tmp_path / "empty.ply") == 0
    assert not (tmp_path / "empty.ply").exists()

    model.add_points(np.array([[0.0, 1.0, 2.0], [3.0, 4.0, 5.0]]), np.array([0.1, -0.2]))
    model.add_points(np.array([[6.0, 7.0, 8.0]]), np.array([0.3]))
    path = tmp_path / "out" / "world.ply"
    assert model.export(path) == 3

    vertex = PlyData.read(str(path))['vertex']
    assert vertex.count == 3
    assert np.allclose(vertex['x'], [0.0, 3.0, 6.0])
    assert np.allclose(vertex['intensity'], [0.1, -0.2, 0.3])


def test_world_model_rejects_mismatch():
    with pytest.raises(ValueError):
        WorldModel().add_points(np.zeros((2, 3)), np.zeros(3))


def test_color_volume_integration():
    volume, intr, t_local = _wall_volume()
    vmap, _ = raycast(volume, intr, np.eye(3), t_local, 32, 32)
    colors = ColorVolume(volume)
    rgb = np.zeros((32, 32, 3), dtype=np.uint8)
    rgb[..., 0], rgb[..., 1], rgb[..., 2] = 10, 20, 30

    updated = colors.integrate(vmap, rgb, intr, np.eye(3), t_local, volume.trunc_dist)
    assert updated > 0
    interior = vmap[4:-4, 4:-4].reshape(-1, 3)
    hits = interior[np.isfinite(interior[:, 2])]
    assert hits.shape[0] > 0
    assert np.all(colors.fetch_colors(hits) == [10, 20, 30])

    colors.shift([64, 0, 0])
    assert np.all(colors.weight == 0)
