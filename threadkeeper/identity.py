"""
THREADKEEPER identity constants.
"""

__version__ = "0.4.0"
__codename__ = "THREADKEEPER"
__tagline__ = "Mention it. Watch it ship."

BANNER = r"""
 _____ _                    _ _
|_   _| |__  _ __ ___  __ _| | | _____  ___ _ __   ___ _ __
  | | | '_ \| '__/ _ \/ _` | | |/ / _ \/ _ \ '_ \ / _ \ '__|
  | | | | | | | |  __/ (_| | |   <  __/  __/ |_) |  __/ |
  |_| |_| |_|_|  \___|\__,_|_|_|\_\___|\___| .__/ \___|_|
                                           |_|
"""
