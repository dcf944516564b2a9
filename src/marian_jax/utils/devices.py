"""Device selection.

A graph allocates every parameter and constant on one device, chosen once.
Silent CPU fallback is easy to miss when you meant to use an accelerator, so
`allow_cpu=False` turns it into an error.
"""

from __future__ import annotations

import jax


def resolve_device(platform: str | None = None, index: int = 0, *, allow_cpu: bool = True) -> jax.Device:
    """Pick a JAX device.

    :param platform: Backend name ("cpu", "gpu", "tpu") or None for the default backend.
    :param int index: Index into that backend's device list.
    :param bool allow_cpu: If False, a CPU result raises.
    :raises ValueError: If `index` is out of range.
    :raises RuntimeError: If the backend is unavailable, or CPU is refused.
    :return jax.Device: The selected device.
    """
    devs = jax.devices(platform) if platform else jax.devices()
    if not devs:
        raise RuntimeError("JAX reports no devices. JAX installation is broken.")
    if index < 0 or index >= len(devs):
        raise ValueError(f"Device index {index} out of range for {len(devs)} {devs[0].platform} device(s)")
    dev = devs[index]
    if dev.platform == "cpu" and not allow_cpu:
        raise RuntimeError(
            "Selected device is CPU but graph.allow_cpu=false. "
            "Install an accelerator-enabled jaxlib or set graph.allow_cpu=true."
        )
    return dev


def device_platform(x: jax.Array) -> str | None:
    """Return the platform an array lives on, or None if it can't be told.

    :param jax.Array x: JAX array to check.
    :return str | None: Platform name (e.g., "cpu", "gpu").
    """
    devices = getattr(x, "devices", None)
    if devices is None:
        return None
    devs = devices()
    if not devs:
        return None
    return next(iter(devs)).platform
