import time


# Class for timing passes. Initialize to start, call to check, use
# the `start` and `stop` methods to restart or freeze the timer.
class Timer:
    _a = 0.0
    _b = None

    def __init__(self): self.start()

    # Elapsed seconds rounded to "precision" significant digits. When
    # stopped, returns the total time between start and stop.
    def __call__(self, precision=3): return float(f"{self.total:.{precision-1}e}")
    def __str__(self): return f"{self()}s"

    # (Re)start the timer, returning the start time.
    def start(self):
        self._a = time.perf_counter()
        self._b = None
        return self._a

    # Stop the timer and return the total elapsed seconds.
    def stop(self):
        if (self._b is None): self._b = time.perf_counter()
        return self.total

    # Seconds since start if running, total time if stopped.
    @property
    def total(self):
        if (self._b is None): return time.perf_counter() - self._a
        else:                 return self._b - self._a
