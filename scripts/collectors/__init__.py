"""
Data Collection Scripts

This module contains the clients that talk to external sources:
- Overpass API for boundary relations and server status
- OSM API for notes
- GeoServer REST API
- The retry engine shared by all of them
"""
