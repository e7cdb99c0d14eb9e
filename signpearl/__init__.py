"""SignPearl document signing service."""
