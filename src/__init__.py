"""Local grid rank tracker."""
