"""Domain Services.

This package contains domain services that implement business logic
without infrastructure dependencies: terminology resolution, obs-group
encoding, search compilation, change detection and history reconstruction.
"""
