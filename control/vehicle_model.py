"""
Vehicle kinematics (bicycle model).
Used for latency compensation and for the optimizer's rollouts.
"""

import numpy as np
from typing import Tuple

from data.formats.data_format import PredictedPose


class BicycleModel:
    """
    Kinematic bicycle model in the simulator's sign convention.
    Positive steering turns the heading clockwise (psi decreases).
    """

    def __init__(self, lf: float = 2.67):
        """
        Initialize bicycle model.

        Args:
            lf: Distance from the front axle to the center of gravity (meters)
        """
        if lf <= 0.0:
            raise ValueError(f"lf must be positive, got {lf}")
        self.lf = lf

    def update(self, x: float, y: float, heading: float, velocity: float,
               steering_angle: float, acceleration: float,
               dt: float) -> Tuple[float, float, float, float]:
        """
        Advance the vehicle state by one step.

        Args:
            x: Current x position
            y: Current y position
            heading: Current heading (radians)
            velocity: Current velocity
            steering_angle: Steering command (Lf-scaled radians)
            acceleration: Throttle, treated as acceleration
            dt: Time step (seconds)

        Returns:
            New (x, y, heading, velocity)
        """
        new_x, new_y, new_heading, new_velocity = self.propagate(
            x, y, heading, velocity, steering_angle, acceleration, dt
        )
        return float(new_x), float(new_y), float(new_heading), float(new_velocity)

    def propagate(self, x, y, heading, velocity, steering_angle, acceleration, dt):
        """Same step as update(), elementwise over numpy arrays (batched rollouts)."""
        new_x = x + velocity * np.cos(heading) * dt
        new_y = y + velocity * np.sin(heading) * dt
        new_heading = heading - velocity * steering_angle / self.lf * dt
        new_velocity = velocity + acceleration * dt
        return new_x, new_y, new_heading, new_velocity

    def heading_rate(self, velocity: float, steering_angle: float) -> float:
        """Heading rate (rad/s) for a given speed and steering command."""
        return -velocity * steering_angle / self.lf


class LatencyCompensator:
    """
    Forward-predicts the vehicle over the actuation delay so the optimizer
    plans from where the vehicle will be when the command lands.
    """

    def __init__(self, latency: float, lf: float):
        self.latency = latency
        self.model = BicycleModel(lf=lf)

    def predict(self, x: float, y: float, psi: float, speed: float,
                steering_angle: float, throttle: float) -> PredictedPose:
        new_x, new_y, new_psi, new_speed = self.model.update(
            x, y, psi, speed, steering_angle, throttle, self.latency
        )
        return PredictedPose(x=new_x, y=new_y, psi=new_psi, speed=new_speed)
