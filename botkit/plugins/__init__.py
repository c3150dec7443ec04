"""Bundled plugins, discovered at startup by ``PluginManager.load_all_plugins``."""
