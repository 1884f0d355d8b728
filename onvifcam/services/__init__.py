"""ONVIF engine services: discovery, auth, dispatch and eventing."""
