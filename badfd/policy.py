from .config import TracerConfig


def is_anomalous(ret: int, duration_ns: int, threshold_ns: int) -> bool:
    # a failure matters whatever its speed, a slow call whatever its outcome
    return ret < 0 or duration_ns >= threshold_ns


class AnomalyPolicy:
    """Binds the predicate to one configuration snapshot."""

    __slots__ = ("threshold_ns",)

    def __init__(self, config: TracerConfig):
        self.threshold_ns = config.threshold_ns

    def __call__(self, ret: int, duration_ns: int) -> bool:
        return is_anomalous(ret, duration_ns, self.threshold_ns)
