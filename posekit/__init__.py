"""Camera pose estimation: EPnP, PnP and Sim(3) RANSAC, and viewer control."""

__version__ = "0.1.0"
__all__ = ["epnp", "pnp_ransac", "sim3", "viewer_control"]