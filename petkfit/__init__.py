"""
petkfit: voxel-wise compartmental kinetic modeling of dynamic PET data.
"""
