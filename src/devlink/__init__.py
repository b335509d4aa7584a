"""devlink - link a phone number to a messaging account via device pairing."""

__version__ = "0.1.0"
