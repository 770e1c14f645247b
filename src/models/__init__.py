"""Records and errors shared by every LayerSync component.

Import from ``models.records`` and ``models.errors`` directly; the role model
depends on ``models.errors`` and this package stays import-free to keep that
edge acyclic.
"""
