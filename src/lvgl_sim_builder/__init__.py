"""Docker-driven WebAssembly simulator builds for EEZ Studio LVGL projects."""

__version__ = "0.3.0"
