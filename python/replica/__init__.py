# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Client of replica, a hierarchical file storage service."""

from .address import *
from .client import *
from .config import *
from .errors import *
from .fileinfo import *
from .token import *
from .transport import *

__version__ = "0.1.0"
