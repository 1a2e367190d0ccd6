"""Built-in Salesforce tools.

All handler instances are aggregated into a single list for registry
construction.
"""

from orgpilot.tools.builtin.apex_write_tools import TOOLS as APEX_WRITE_TOOLS
from orgpilot.tools.builtin.inventory_tools import TOOLS as INVENTORY_TOOLS
from orgpilot.tools.builtin.query_tools import TOOLS as QUERY_TOOLS
from orgpilot.tools.builtin.source_tools import TOOLS as SOURCE_TOOLS
from orgpilot.tools.builtin.test_tools import TOOLS as TEST_TOOLS

BUILTIN_TOOLS = QUERY_TOOLS + INVENTORY_TOOLS + SOURCE_TOOLS + TEST_TOOLS + APEX_WRITE_TOOLS

__all__ = [
    "BUILTIN_TOOLS",
]
