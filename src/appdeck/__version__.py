"""appdeck version information."""

__version__ = "0.3.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Version history:
# 0.1.0 - Initial release: MK.2 driver, key images, brightness, reset
# 0.1.1 - Key press/release events with hold duration, iterator read loop
# 0.2.0 - Auto-reconnect (liveness poll + retry timer), firmware query,
#         Mini/Original/XL profiles, profile overrides
# 0.2.1 - Fix flip check (only flip when at least one flag is set), stale
#         timer could reopen a deck after close()
# 0.3.0 - App switcher: menu/app grid rendering, tile cache, blank keys,
#         screenshot, pyusb backend, JSON config, CLI
