"""The four platform services hosted on the event choreography core."""
