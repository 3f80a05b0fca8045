"""HTTP routes - thin translation onto the connection manager and execution tracker."""
