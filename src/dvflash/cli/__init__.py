"""
DVFlash Command-Line Interface
==============================

- **dvflash**: serial boot, flash and erase tool for DM644x boards

Implemented as a Click application with consistent exit codes.
"""

__all__ = ["dvflash"]
