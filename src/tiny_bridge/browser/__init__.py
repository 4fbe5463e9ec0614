"""Browser-driven downloads from the Tiny web UI."""

from tiny_bridge.browser.inventory import (
    download_deposit_inventory,
    remove_files_by_extension,
)

__all__ = ["download_deposit_inventory", "remove_files_by_extension"]
