# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
