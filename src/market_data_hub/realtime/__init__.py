"""Real-time subscription and fan-out layer.

Modules are imported directly (e.g. market_data_hub.realtime.gateway); this
package does not re-export them.
"""
