# Overview: Service layer for the fulfillment core; every business operation lives here.
