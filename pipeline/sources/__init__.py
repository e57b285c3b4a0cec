"""
Upstream collaborators: partition lists and the public data API.
"""
