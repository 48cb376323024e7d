# KPR Bot API Package
