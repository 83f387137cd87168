"""Main entry point.

Typically invoked as "python3 -m ircsession" or "/usr/bin/ircsession".
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from . import run

run()
