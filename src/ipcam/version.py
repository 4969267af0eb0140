"""Version information for ipcam."""

APP_VERSION = "1.4.0"
