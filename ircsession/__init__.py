"""ircsession — a minimal asyncio IRC client.

ircsession parses IRC protocol lines into structured messages, and runs a
client session that reads, writes, keeps the connection alive and dispatches
incoming messages to registered handlers.
"""

# Copyright © Faidon Liambotis
# Copyright © Wikimedia Foundation, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY CODE, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from ._version import __version__
from .client import IRCClient, SessionState, SessionStateError
from .message import ERR, RPL, IRCMessage, NotPrivmsgError, format_line
from .main import run
from .registry import WILDCARD, CallbackRegistry

__all__ = [
    "ERR",
    "RPL",
    "WILDCARD",
    "CallbackRegistry",
    "IRCClient",
    "IRCMessage",
    "NotPrivmsgError",
    "SessionState",
    "SessionStateError",
    "__version__",
    "format_line",
    "run",
]
