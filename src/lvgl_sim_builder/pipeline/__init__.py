"""Build pipeline for the simulator volume.

The engine owns stage statuses and runs one operation at a time against a
single Docker named volume. External commands go through one supervisor so
that an abort always has a single child process to terminate. Short-lived
helper containers give filesystem access to the volume and are stopped on
every exit path.
"""
