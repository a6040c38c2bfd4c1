# The MIT License (MIT)
# Copyright © 2025 Entrius

"""Discovery of companion pull requests and of the branch a dependent is checked against."""
