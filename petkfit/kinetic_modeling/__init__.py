"""
Kinetic models, the bounded Levenberg-Marquardt optimizer and the voxel-wise fitting driver.
"""
