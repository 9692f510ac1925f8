#!/usr/bin/env python3
"""
Demo script for a non-LTE solve of a collapsing molecular cloud.

A singular isothermal-like density profile with an infall velocity field
is sampled onto a grid and the level populations of a CO-like rotor are
iterated to convergence. The run is checkpointed to ``cloud.h5`` and can be
continued with :func:`pylime.resume`.
"""

import logging
import sys

import numpy as np

import pylime
from pylime.constants import AU

RADIUS = 2000 * AU
R_INNER = 10 * AU


def density(x, y, z):
    r = max(np.sqrt(x * x + y * y + z * z), R_INNER)
    return [1.5e12 * (r / (300 * AU)) ** -1.5]  # H2 molecules per m^3


def temperature(x, y, z):
    r = max(np.sqrt(x * x + y * y + z * z), R_INNER)
    tkin = 60.0 * (r / (100 * AU)) ** -0.4
    return tkin, tkin


def abundance(x, y, z):
    return [1e-4]


def doppler(x, y, z):
    return 200.0  # m/s


def velocity(x, y, z):
    r = max(np.sqrt(x * x + y * y + z * z), R_INNER)
    speed = -1.0e3 * np.sqrt(300 * AU / r)
    return speed * np.array([x, y, z]) / r


def co_rotor():
    """The lowest four rotational levels of a CO-like molecule."""
    j = np.arange(4)
    b = 1.9225  # rotational constant [cm^-1]
    temperatures = [10.0, 20.0, 50.0, 100.0, 200.0]
    lcu, lcl, down = [], [], []
    for u in range(1, 4):
        for l in range(u):
            lcu.append(u)
            lcl.append(l)
            down.append([3.0e-17 / (u - l)] * len(temperatures))
    partner = pylime.CollisionPartner("H2", 0, temperatures, lcu, lcl, down)
    return pylime.MolecularData(
        "co-rotor", 28.0,
        energies=b * j * (j + 1),
        weights=2 * j + 1,
        lau=[1, 2, 3], lal=[0, 1, 2],
        aeinst=[7.2e-8, 6.9e-7, 2.5e-6],
        freq=[115.2712018e9, 230.538e9, 345.7959899e9],
        partners=(partner,),
    ).validate()


def report(progress):
    print(f"  pass {progress.iteration:3d}: "
          f"{100 * progress.converged_fraction[0]:5.1f}% converged, "
          f"{progress.rays_cast} rays, {progress.n_failed} failed solves")


def main():
    """Run the collapsing cloud demo."""
    logging.basicConfig(level=logging.INFO, stream=sys.stdout,
                        format="%(name)s: %(message)s")
    print("=" * 60)
    print("pylime collapsing cloud demo")
    print("=" * 60)

    model = pylime.PhysicalModel(density, temperature, abundance, doppler, velocity)
    params = pylime.Parameters(
        radius=RADIUS,
        min_scale=R_INNER,
        n_points=2000,
        n_sink_points=500,
        max_iterations=12,
        min_rays=20,
        max_rays=400,
        n_threads=4,
    ).validate()

    result = pylime.run(model, [co_rotor()], params, progress=report, checkpoint="cloud.h5")

    print(f"\nFinal state: {result.state.name} after {result.iterations} passes")
    pops = result.populations[0].pops
    r = np.linalg.norm(result.grid.positions, axis=1) / AU
    order = np.argsort(r)
    print("\n  r [au]    n0      n1      n2      n3")
    for i in order[:: max(1, len(order) // 10)]:
        if result.grid.sink[i]:
            continue
        print(f"  {r[i]:7.1f} " + " ".join(f"{p:7.4f}" for p in pops[i]))


if __name__ == "__main__":
    main()
