"""Identity, permission and audit core for the Dietician platform."""
