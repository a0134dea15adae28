"""OpenCoupon: find, test and re-apply discount codes on checkout pages."""
