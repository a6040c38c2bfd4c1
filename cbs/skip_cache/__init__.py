# The MIT License (MIT)
# Copyright © 2025 Entrius
