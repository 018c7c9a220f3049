"""
Probe Flasher Command-Line Interface
====================================

- **pflash**: the ``probe-flasher`` tool (ports, modes, identify, flash)

Implemented with Click; exit codes are defined in cli.errors.
"""

__all__ = ["pflash"]
