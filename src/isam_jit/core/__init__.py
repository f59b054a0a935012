# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""Keys, values, ordering, variable index and the nonlinear factor store."""
