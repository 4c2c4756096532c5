# posekit

Camera pose estimation tools built on NumPy:

- `posekit.epnp`: closed-form perspective-n-point pose (EPnP) from 3D–2D
  correspondences and pinhole intrinsics, refined by Gauss–Newton.
- `posekit.pnp_ransac`: robust camera pose with RANSAC over EPnP
  hypotheses, followed by a refinement over all the best inliers.
- `posekit.sim3`: similarity transform (rotation, translation, scale)
  between two cameras that see the same 3D points, by Horn's closed-form
  quaternion method inside RANSAC.
- `posekit.viewer_control`: viewer settings and a thread-safe stop/finish
  handshake for a visualisation loop.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## EPnP

```python
import numpy as np
from posekit.epnp import Intrinsics, solve_pose

intrinsics = Intrinsics(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
points_3d = np.random.default_rng(0).uniform(-1, 1, size=(20, 3)) + [0, 0, 5]
points_2d = intrinsics.project(np.eye(3), np.zeros(3), points_3d)

estimate = solve_pose(points_3d, points_2d, intrinsics)
print(estimate.rotation, estimate.translation, estimate.error)
```

`solve_pose` returns a `PoseEstimate` (rotation, translation and mean
reprojection error in pixels) and raises `ValueError` for inputs of the
wrong shape or of unequal length.

The stages are also available on their own: `choose_control_points`,
`barycentric_coordinates`, `qr_solve` (Householder QR least squares, which
raises `SingularMatrixError` when a column is entirely zero) and
`gauss_newton` (five refinement steps; it stops early on a singular system).
`reprojection_error` scores a pose, `mat_to_quat` and `relative_error`
compare an estimate with a known pose, and `format_pose` renders a pose as
three lines of `r0 r1 r2 t`.

## PnP with RANSAC

```python
import random
from posekit.pnp_ransac import Correspondence, PnPSolver

correspondences = [
    Correspondence(point_3d=tuple(p3), point_2d=tuple(p2), sigma2=1.0, index=i)
    for i, (p3, p2) in enumerate(zip(points_3d, points_2d))
]
solver = PnPSolver(correspondences, len(correspondences), intrinsics, rng=random.Random(1))
solver.set_ransac_parameters(0.99, 10, 300, 4, 0.5, 5.991)
result = solver.find()
if result.found:
    print(result.pose, result.n_inliers)
```

`index` places each correspondence in the caller's list of matches, which
has `num_matches` entries; `RansacResult.inliers` is indexed the same way.
`pose` is a 4x4 world-to-camera matrix, or `None`. The solver keeps its
iteration count between calls, so `iterate(n)` can be called repeatedly and
`RansacResult.no_more` tells when the iteration budget is spent.
`check_inliers(rotation, translation)` and `refine()` are public as well.

## Sim(3) with RANSAC

`compute_sim3(points1, points2, fix_scale)` aligns two n x 3 point sets and
returns a `Sim3` whose `matrix()` maps frame 2 onto frame 1 and whose
`inverse_matrix()` does the reverse. `compute_centroid`, `project` and
`from_camera_to_image` are the helpers it and the solver use.

`Sim3Solver(correspondences, num_matches, camera_matrix1, camera_matrix2,
fix_scale, rng)` takes `Sim3Correspondence` objects (the point in each
camera's frame, its match index and the measurement variance in each
image) and 3x3 camera matrices. `find()` and `iterate(n)` return a
`Sim3Result` with `sim3`, `inliers`, `n_inliers`, `no_more` and the 4x4
`transform`; `best_estimate` holds the best hypothesis seen so far.

## Viewer control

`ViewerSettings.from_mapping(settings)` reads `Camera.fps`, `Camera.width`,
`Camera.height` and `Viewer.ViewpointX/Y/Z/F` from a mapping, falling back
to 30 fps and 640x480; `frame_period_ms` gives the refresh period.
`ViewerControl` coordinates a loop with other threads: the loop calls
`start`, `stop`, `check_finish` and `set_finish`; other threads call
`request_stop`, `is_stopped`, `release`, `request_finish` and `is_finished`.

## What this package does not do

It draws nothing: there is no map or frame window. It also does not detect
or match image features, track a camera over a video, or build a map; it
works from correspondences that the caller supplies.