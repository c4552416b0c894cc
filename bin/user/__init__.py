# WeeWX user extensions live in this package.
