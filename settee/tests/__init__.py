# settee: a lightweight Couch client with a streaming change feed
# Copyright (C) 2011-2018 Novacut Inc
#
# This file is part of `settee`.
#
# `settee` is free software: you can redistribute it and/or modify it under
# the terms of the GNU Lesser General Public License as published by the Free
# Software Foundation, either version 3 of the License, or (at your option) any
# later version.
#
# `settee` is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS
# FOR A PARTICULAR PURPOSE.  See the GNU Lesser General Public License for more
# details.
#
# You should have received a copy of the GNU Lesser General Public License along
# with `settee`.  If not, see <http://www.gnu.org/licenses/>.
#
# Authors:
#   Jason Gerard DeRose <jderose@novacut.com>
#


"""
Unit tests for the `settee` package.

Run them all, doctests included, with::

    ./setup.py test

Tests that need a live CouchDB are skipped unless ``SETTEE_TEST_URL`` is set.
"""
