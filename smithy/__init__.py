"""Read, edit and write Minecraft region files as a flat directory of chunk files."""

__version__ = "0.2.0"
__all__ = ["anvil", "cli", "files", "filesystem", "util"]